from decimal import Decimal

import pytest
from pydantic import ValidationError

from marketplace_errors import InsufficientStock, NotFound
from marketplace_models import (
    Crop, CropUpdate, Interest, InterestStatus, InterestSubmission, Owner,
)


def test_crop_defaults():
    crop = Crop(name="Tomato", quantity=100, owner=Owner(owner_email="farmer@example.com"))
    assert crop.status == "pending"
    assert crop.unit == "kg"
    assert crop.interests == []
    assert crop.created_at.tzinfo is not None


def test_crop_interest_lookups():
    interest = Interest(id="i1", crop_id="c1", user_email="b@example.com", user_name="B", quantity=5)
    crop = Crop(
        id="c1", name="Tomato", quantity=100,
        owner=Owner(owner_email="farmer@example.com"), interests=[interest],
    )
    assert crop.find_interest("i1") == interest
    assert crop.find_interest("i2") is None
    assert crop.find_interest_by_email("b@example.com") == interest
    assert crop.is_owned_by("farmer@example.com")
    assert not crop.is_owned_by(None)


def test_interest_status_from_string():
    interest = Interest(
        id="i1", crop_id="c1", user_email="b@example.com", user_name="B", quantity=5, status="cancelled"
    )
    assert interest.status == InterestStatus.CANCELLED


def test_submission_strips_text():
    submission = InterestSubmission(crop_id=" c1 ", user_email=" b@example.com ", quantity=3)
    assert submission.crop_id == "c1"
    assert submission.user_email == "b@example.com"
    assert submission.user_name is None


def test_crop_update_rejects_quantity():
    with pytest.raises(ValidationError):
        CropUpdate(quantity=500)


def test_error_payloads():
    error = InsufficientStock(requested=120, available=60)
    assert error.as_dict() == {"code": "INSUFFICIENT_STOCK", "requested": 120, "available": 60}
    assert "120" in error.message

    missing = NotFound("Crop c1 not found", crop_id="c1")
    assert missing.as_dict() == {"code": "NOT_FOUND", "crop_id": "c1"}
    assert "crop_id=c1" in str(missing)


def test_quantities_are_exact_decimals():
    crop = Crop(name="Saffron", quantity=0.3, owner=Owner(owner_email="farmer@example.com"))
    assert crop.quantity == Decimal("0.3")
    assert crop.quantity - Decimal("0.1") == Decimal("0.2")

    assert crop.model_dump(mode="json")["quantity"] == 0.3
    assert crop.model_copy(update={"quantity": Decimal("100")}).model_dump(mode="json")["quantity"] == 100
