from shapebase.corpus import bounding_box
from shapebase.db.postgres import _bounds_clause
from shapebase.dimensions import Space, TasteVector


def test_bounds_clause():
    target = TasteVector.from_mapping(Space.ENTERTAINMENT, {"darkness": 8})
    bounds = bounding_box(target, 2.0)
    # $1 is the space and $2 the content filter
    clause, args = _bounds_clause(Space.ENTERTAINMENT, bounds, first_arg=3)

    parts = clause.split(" AND COALESCE")
    assert len(parts) == 10
    assert parts[0] == "COALESCE((shape_snapshot->>'darkness')::float8, 5.0) BETWEEN $3 AND $4"
    assert parts[1] == "((shape_snapshot->>'intellectual_engagement')::float8, 5.0) BETWEEN $5 AND $6"
    assert clause.endswith(
        "COALESCE((shape_snapshot->>'working_class_authenticity')::float8, 5.0) BETWEEN $21 AND $22"
    )
    assert len(args) == 20
    assert args[:4] == [6.0, 10.0, 3.0, 7.0]
    assert args[-2:] == [3.0, 7.0]


def test_bounds_clause_music_dimensions():
    bounds = bounding_box(TasteVector.empty(Space.MUSIC), 1.0)
    clause, args = _bounds_clause(Space.MUSIC, bounds, first_arg=2)
    assert clause.startswith("COALESCE((shape_snapshot->>'energy')::float8, 5.0) BETWEEN $2 AND $3")
    assert "atmosphere')::float8, 5.0) BETWEEN $20 AND $21" in clause
    assert args == [4.0, 6.0] * 10
