# tests/test_discounts.py
from datetime import timedelta

import pytest

from gatherpay.application.services.discount_service import discount_amount
from gatherpay.domain.entities import DiscountType, ProductType
from gatherpay.domain.errors import ConflictError, NotFoundError, ValidationError
from gatherpay.domain.value_objects import DiscountSelector


@pytest.fixture
def discounts(services):
    return services["discount_service"]


def preview(discounts, user, code=None, reward_id=None, amount=2000, product=ProductType.EVENT):
    return discounts.preview(DiscountSelector(code=code, reward_id=reward_id), user.id, product, amount)


def test_discount_amount_is_capped():
    assert discount_amount(DiscountType.PERCENTAGE, 15, 2000) == 300
    assert discount_amount(DiscountType.FIXED, 2500, 2000) == 2000
    assert discount_amount(DiscountType.FIXED, 0, 2000) == 0


def test_no_selector_means_no_discount(discounts, make_user):
    quote = preview(discounts, make_user())
    assert quote.valid
    assert quote.final_amount == 2000


def test_create_code_normalizes_and_rejects_duplicates(discounts, clock):
    code = discounts.create_code(code=" summer ", discount_type=DiscountType.FIXED, value=500)
    assert code.code == "SUMMER"
    assert code.valid_until - code.valid_from == timedelta(days=365)
    with pytest.raises(ConflictError):
        discounts.create_code(code="SUMMER", discount_type=DiscountType.FIXED, value=100)


@pytest.mark.parametrize("kwargs", [
    dict(code="", discount_type=DiscountType.FIXED, value=100),
    dict(code="BIG", discount_type=DiscountType.PERCENTAGE, value=120),
    dict(code="NEG", discount_type=DiscountType.FIXED, value=-1),
    dict(code="WHAT", discount_type=DiscountType.FIXED, value=1, product_types=["TICKET"]),
])
def test_create_code_validation(discounts, kwargs):
    with pytest.raises(ValidationError):
        discounts.create_code(**kwargs)


def test_code_validity_window(discounts, make_user, clock):
    user = make_user()
    discounts.create_code(code="LATER", discount_type=DiscountType.FIXED, value=100,
                          valid_from=clock() + timedelta(days=1), valid_until=clock() + timedelta(days=2))
    discounts.create_code(code="PAST", discount_type=DiscountType.FIXED, value=100,
                          valid_from=clock() - timedelta(days=2), valid_until=clock() - timedelta(days=1))

    assert preview(discounts, user, "LATER").message == "Discount code is not yet valid"
    assert preview(discounts, user, "PAST").message == "Discount code has expired"


def test_code_restrictions_report_first_failing_rule(discounts, make_user):
    user = make_user(country="FR", city="Paris", segment="student")
    discounts.create_code(code="MIN", discount_type=DiscountType.FIXED, value=100, min_amount_minor=5000)
    discounts.create_code(code="SUBS", discount_type=DiscountType.FIXED, value=100, product_types=["SUBSCRIPTION"])
    discounts.create_code(code="DEONLY", discount_type=DiscountType.FIXED, value=100, allowed_countries=["de"])
    discounts.create_code(code="BERLIN", discount_type=DiscountType.FIXED, value=100, allowed_cities=["Berlin"])
    discounts.create_code(code="VIP", discount_type=DiscountType.FIXED, value=100, user_segments=["vip"])
    discounts.create_code(code="STUDENT", discount_type=DiscountType.PERCENTAGE, value=20,
                          user_segments=["student"], allowed_countries=["FR"])

    assert preview(discounts, user, "MIN").message == "Minimum purchase amount of 5000 required"
    assert preview(discounts, user, "SUBS").message == "Discount code not valid for this product"
    assert preview(discounts, user, "DEONLY").message == "Discount code not valid in your country"
    assert preview(discounts, user, "BERLIN").message == "Discount code not valid in your city"
    assert preview(discounts, user, "VIP").message == "Discount code not valid for your account"
    quote = preview(discounts, user, "student")
    assert quote.valid
    assert (quote.discount_amount, quote.final_amount) == (400, 1600)
    assert quote.instrument_kind == "code"


def test_deactivated_code(discounts, make_user):
    discounts.create_code(code="OFF", discount_type=DiscountType.FIXED, value=100)
    discounts.deactivate_code("OFF")
    assert preview(discounts, make_user(), "OFF").message == "Discount code is not active"
    with pytest.raises(NotFoundError):
        discounts.deactivate_code("MISSING")


def test_rewards_belong_to_their_user(discounts, make_user, clock):
    owner, other = make_user(), make_user()
    reward = discounts.grant_reward(owner.id, "silver", DiscountType.PERCENTAGE, 10, expires_in_days=7)

    quote = preview(discounts, owner, reward_id=reward.id)
    assert quote.valid
    assert quote.discount_amount == 200
    assert quote.instrument_kind == "reward"
    assert preview(discounts, other, reward_id=reward.id).message == "Reward not found"
    assert [r.id for r in discounts.list_rewards(owner.id)] == [reward.id]

    clock.advance(days=8)
    assert preview(discounts, owner, reward_id=reward.id).message == "Reward has expired"
    assert discounts.list_rewards(owner.id) == []


def test_grant_reward_validation(discounts, make_user):
    with pytest.raises(NotFoundError):
        discounts.grant_reward(999, "gold", DiscountType.FIXED, 100)
    with pytest.raises(ValidationError):
        discounts.grant_reward(make_user().id, "gold", DiscountType.PERCENTAGE, 150)
