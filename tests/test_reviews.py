import pytest

from errors import NotFound, ValidationError
from reviews import ReviewAggregator


@pytest.fixture
def reviews(db):
    return ReviewAggregator(db)


@pytest.mark.parametrize("rating", [0, 6])
def test_rating_out_of_bounds(reviews, make_user, make_product, rating):
    user, _ = make_user()
    product = make_product()
    with pytest.raises(ValidationError):
        reviews.add(user.id, product["id"], rating)


@pytest.mark.parametrize("rating", [1, 5])
def test_rating_bounds_accepted(reviews, make_user, make_product, rating):
    user, _ = make_user()
    product = make_product()
    assert reviews.add(user.id, product["id"], rating)["rating"] == rating


def test_rating_recomputed_on_write(db, reviews, make_user, make_product):
    product = make_product()
    for rating in (5, 4, 4):
        reviews.add(make_user()[0].id, product["id"], rating)

    stored = db["product"].find_one({"title": "Widget"})
    assert stored["reviews_count"] == 3
    assert stored["rating"] == 4.33


def test_list_newest_first_with_names(reviews, make_user, make_product):
    product = make_product()
    alice, _ = make_user(full_name="Alice")
    bob, _ = make_user(full_name="Bob")
    reviews.add(alice.id, product["id"], 3, "ok")
    reviews.add(bob.id, product["id"], 5, "great", verified_purchase=True)

    listed = reviews.list(product["id"])
    assert [r["users"]["full_name"] for r in listed] == ["Bob", "Alice"]
    assert listed[0]["verified_purchase"] is True


def test_review_needs_visible_product(reviews, make_user, make_product):
    user, _ = make_user()
    hidden = make_product(approved=False)
    with pytest.raises(NotFound):
        reviews.add(user.id, hidden["id"], 4)
