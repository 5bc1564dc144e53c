import pytest
from fastapi.testclient import TestClient

import config
import marketplace_auth
import marketplace_logic as logic
from api import app
from marketplace_models import CropCreate, InterestSubmission, Owner
from marketplace_storage import MemoryCropStore, get_store


@pytest.fixture
def store():
    return MemoryCropStore()


@pytest.fixture
def sample_owner():
    return Owner(owner_email="farmer@example.com", owner_name="Ramesh Patil")


@pytest.fixture
def sample_crop(store, sample_owner):
    return logic.create_crop(
        store,
        sample_owner,
        CropCreate(
            name="Tomato",
            type="Vegetable",
            price_per_unit=30.0,
            unit="kg",
            quantity=100,
            description="Fresh hybrid tomatoes",
            location="Pune",
        ),
    )


@pytest.fixture
def submit(store):
    """Submit an interest against the test store"""
    def _submit(crop_id, user_email, quantity, user_name=None, message=None):
        return logic.submit_interest(
            store,
            InterestSubmission(
                crop_id=crop_id,
                user_email=user_email,
                user_name=user_name or user_email.split("@")[0].title(),
                quantity=quantity,
                message=message,
            ),
        )

    return _submit


@pytest.fixture
def auth_headers():
    def _headers(email="farmer@example.com", name="Ramesh Patil"):
        return {
            "Authorization": "Bearer dev-token",
            "user-email": email,
            "user-name": name,
        }

    return _headers


@pytest.fixture
def client(store, monkeypatch):
    # Development-mode auth: identity comes from the user-email/user-name headers
    monkeypatch.setattr(config, "AUTH_DEV_MODE", True)
    monkeypatch.setattr(marketplace_auth, "is_firebase_ready", lambda: False)
    app.dependency_overrides[get_store] = lambda: store
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
