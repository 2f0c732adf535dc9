import pytest

from bookstore.aggregation import evaluate, run_pipeline
from bookstore.runner import AVERAGE_PRICE_BY_GENRE, BOOKS_BY_DECADE, MOST_BOOKS_AUTHOR

BOOKS = [
    {"title": "To Kill a Mockingbird", "author": "Harper Lee", "genre": "Fiction", "published_year": 1960, "price": 12.99},
    {"title": "1984", "author": "George Orwell", "genre": "Dystopian", "published_year": 1949, "price": 10.99},
    {"title": "Animal Farm", "author": "George Orwell", "genre": "Fiction", "published_year": 1945, "price": 8.5},
    {"title": "Go Set a Watchman", "author": "Harper Lee", "genre": "Fiction", "published_year": 2015, "price": 19.99},
    {"title": "Brave New World", "author": "Aldous Huxley", "genre": "Dystopian", "published_year": 1932, "price": 14.0},
]


def test_average_price_by_genre_is_arithmetic_mean():
    rows = run_pipeline(BOOKS, AVERAGE_PRICE_BY_GENRE)
    by_genre = {row["_id"]: row["averagePrice"] for row in rows}
    for genre in ("Fiction", "Dystopian"):
        prices = [book["price"] for book in BOOKS if book["genre"] == genre]
        assert by_genre[genre] == pytest.approx(sum(prices) / len(prices))
    assert [row["_id"] for row in rows] == ["Fiction", "Dystopian"]


def test_most_books_author_breaks_ties_by_name():
    rows = run_pipeline(BOOKS, MOST_BOOKS_AUTHOR)
    # George Orwell and Harper Lee both have two books
    assert rows == [{"_id": "George Orwell", "count": 2}]


def test_books_by_decade():
    rows = run_pipeline(BOOKS, BOOKS_BY_DECADE)
    counts = {row["_id"]: row["count"] for row in rows}
    assert counts == {1960: 1, 1940: 2, 2010: 1, 1930: 1}


def test_decade_boundaries():
    rows = run_pipeline(
        [{"published_year": 1949}, {"published_year": 1960}], BOOKS_BY_DECADE
    )
    assert rows == [{"_id": 1940, "count": 1}, {"_id": 1960, "count": 1}]


def test_evaluate_expressions():
    doc = {"a": 7, "b": 2, "nested": {"c": 3}}
    assert evaluate("$a", doc) == 7
    assert evaluate("$nested.c", doc) == 3
    assert evaluate("$missing", doc) is None
    assert evaluate({"$add": ["$a", "$b", 1]}, doc) == 10
    assert evaluate({"$subtract": ["$a", "$b"]}, doc) == 5
    assert evaluate({"$multiply": ["$a", "$b"]}, doc) == 14
    assert evaluate({"$divide": ["$a", "$b"]}, doc) == 3.5
    assert evaluate({"$mod": ["$a", "$b"]}, doc) == 1
    assert evaluate({"$mod": [-7, 2]}, doc) == -1
    assert evaluate({"$subtract": ["$missing", 1]}, doc) is None
    assert evaluate({"$literal": "$a"}, doc) == "$a"
    assert evaluate({"x": "$a", "y": 1}, doc) == {"x": 7, "y": 1}


def test_evaluate_errors():
    with pytest.raises(ValueError):
        evaluate({"$pow": [2, 3]}, {})
    with pytest.raises(ValueError):
        evaluate({"$subtract": [1]}, {})
    with pytest.raises(ValueError):
        evaluate({"$divide": [1, 0]}, {})
    with pytest.raises(ValueError):
        evaluate({"$add": ["a", 1]}, {})


def test_group_accumulators():
    rows = run_pipeline(
        BOOKS,
        [
            {
                "$group": {
                    "_id": "$author",
                    "cheapest": {"$min": "$price"},
                    "priciest": {"$max": "$price"},
                    "first": {"$first": "$title"},
                    "last": {"$last": "$title"},
                    "titles": {"$push": "$title"},
                    "pages": {"$sum": "$pages"},
                    "avgPages": {"$avg": "$pages"},
                }
            },
            {"$match": {"_id": "Harper Lee"}},
        ],
    )
    assert rows == [
        {
            "_id": "Harper Lee",
            "cheapest": 12.99,
            "priciest": 19.99,
            "first": "To Kill a Mockingbird",
            "last": "Go Set a Watchman",
            "titles": ["To Kill a Mockingbird", "Go Set a Watchman"],
            "pages": 0,
            "avgPages": None,
        }
    ]


def test_group_by_null_collects_everything():
    rows = run_pipeline(BOOKS, [{"$group": {"_id": None, "total": {"$sum": 1}}}])
    assert rows == [{"_id": None, "total": 5}]


def test_match_sort_skip_limit_project_count():
    rows = run_pipeline(
        BOOKS,
        [
            {"$match": {"genre": "Fiction"}},
            {"$sort": {"price": -1}},
            {"$skip": 1},
            {"$limit": 1},
            {"$project": {"_id": 0, "title": 1, "cents": {"$multiply": ["$price", 100]}}},
        ],
    )
    assert rows == [{"title": "To Kill a Mockingbird", "cents": pytest.approx(1299)}]

    counted = run_pipeline(BOOKS, [{"$match": {"price": {"$gt": 12}}}, {"$count": "n"}])
    assert counted == [{"n": 3}]
    assert run_pipeline(BOOKS, [{"$match": {"price": {"$gt": 99}}}, {"$count": "n"}]) == []


def test_project_computed_only():
    rows = run_pipeline([{"_id": 1, "price": 2}], [{"$project": {"double": {"$multiply": ["$price", 2]}}}])
    assert rows == [{"_id": 1, "double": 4}]


def test_pipeline_errors():
    with pytest.raises(ValueError):
        run_pipeline(BOOKS, [{"$unwind": "$tags"}])
    with pytest.raises(ValueError):
        run_pipeline(BOOKS, [{"$group": {"count": {"$sum": 1}}}])
    with pytest.raises(ValueError):
        run_pipeline(BOOKS, [{"$group": {"_id": "$genre", "n": {"$median": 1}}}])
    with pytest.raises(ValueError):
        run_pipeline(BOOKS, [{"$limit": 0}])
    with pytest.raises(ValueError):
        run_pipeline(BOOKS, [{"$match": {}, "$limit": 1}])


def test_decade_groups_int_and_float_years_together():
    rows = run_pipeline(
        [{"published_year": 1949}, {"published_year": 1941.0}, {"published_year": 1960.0}],
        BOOKS_BY_DECADE,
    )
    assert rows == [{"_id": 1940, "count": 2}, {"_id": 1960.0, "count": 1}]


def test_group_key_equality_inside_compound_keys():
    rows = run_pipeline(
        [{"g": "a", "y": 2}, {"g": "a", "y": 2.0}, {"g": "a", "y": 2.5}],
        [{"$group": {"_id": {"genre": "$g", "year": ["$y"]}, "n": {"$sum": 1}}}],
    )
    assert [row["n"] for row in rows] == [2, 1]


def test_project_float_flags_are_inclusions():
    rows = run_pipeline(
        [{"_id": 1, "title": "Dune", "price": 15.5}],
        [{"$project": {"title": 1.0, "_id": 0.0}}],
    )
    assert rows == [{"title": "Dune"}]
