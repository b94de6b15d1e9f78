from snipr.filters import FilterIndex

from conftest import make_record


def test_groups_keep_insertion_order(clock):
    index = FilterIndex()
    for identifier, category in (("B", "tools"), ("A", "tools"), ("C", "cars")):
        index.add(make_record(identifier, clock, category=category))
    assert index.categories() == ["tools", "cars"]
    assert index.members("tools") == ["B", "A"]
    assert index.category_of("C") == "cars"
    assert len(index) == 3


def test_delete_drops_empty_categories(clock):
    index = FilterIndex()
    index.add(make_record("A", clock, category="cars"))
    assert index.delete("A")
    assert not index.delete("A")
    assert "A" not in index
    assert index.categories() == []


def test_move_reports_the_category_left(clock):
    index = FilterIndex()
    index.add(make_record("A", clock, category="cars"))
    assert index.move("A", "cars") is None
    assert index.move("A", "boats") == "cars"
    assert index.members("boats") == ["A"]
    assert index.members("cars") == []
    assert index.move("ghost", "boats") is None


def test_re_adding_moves_instead_of_duplicating(clock):
    index = FilterIndex()
    index.add(make_record("A", clock, category="cars"))
    index.add(make_record("A", clock, category="boats"))
    assert index.members("boats") == ["A"]
    assert len(index) == 1
