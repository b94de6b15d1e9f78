from snipr.config import RuntimeConfig
from snipr.settings import Settings, load_settings


def test_query_and_set_are_strings():
    config = RuntimeConfig({"savefile": "auctions.xml"})
    assert config.query("savefile") == "auctions.xml"
    assert config.query("save.file.0") is None
    assert config.query("save.file.0", "") == ""
    config.set("last.auctioncount", 12)
    assert config.query("last.auctioncount") == "12"


def test_readers_keep_the_dict_they_started_with():
    config = RuntimeConfig({"a": "1"})
    before = config.snapshot()
    config.set("a", "2")
    assert before == {"a": "1"}
    assert config.query("a") == "2"


def test_values_persist_through_the_store(store):
    RuntimeConfig(store=store).set("save.file.0", "auctions-01Jan24_1200.xml")
    reloaded = RuntimeConfig({"save.file.0": "seed"}, store=store)
    assert reloaded.query("save.file.0") == "auctions-01Jan24_1200.xml"


def test_listeners_hear_changes_and_survive_errors(caplog):
    config = RuntimeConfig()
    heard = []

    def broken(key):
        raise RuntimeError("listener broke")

    config.register_listener(broken)
    config.register_listener(heard.append)
    config.set("snipemilliseconds", "7000")
    config.set("snipemilliseconds", "7000")
    assert heard == ["snipemilliseconds"]
    assert "listener broke" in caplog.text


def test_snipe_lead_follows_config(manager):
    assert manager.default_snipe_ms == 10_000
    manager.config.set("snipemilliseconds", "4500")
    assert manager.default_snipe_ms == 4500
    manager.config.set("snipemilliseconds", "soon")
    assert manager.default_snipe_ms == 4500


def test_settings_load_from_toml(tmp_path, monkeypatch):
    cfg = tmp_path / "snipr.toml"
    cfg.write_text(
        "[polling]\nslow_minutes = 69\ncheckpoint_minutes = 5\n"
        "[storage]\nsavefile = 'mine.xml'\n"
        "[config]\nsnipemilliseconds = '3000'\n"
    )
    monkeypatch.setenv("SNIPR_CONFIG", str(cfg))
    settings = load_settings()
    assert settings.polling.checkpoint_minutes == 5
    assert settings.polling.tick_milliseconds == 990
    assert settings.storage.savefile == "mine.xml"
    assert settings.config == {"snipemilliseconds": "3000"}


def test_missing_settings_file_gives_defaults(tmp_path, monkeypatch):
    monkeypatch.setenv("SNIPR_CONFIG", str(tmp_path / "absent.toml"))
    assert load_settings() == Settings()
