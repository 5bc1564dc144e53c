from datetime import datetime
from decimal import Decimal
from unittest.mock import MagicMock

import pytest
from google.api_core import exceptions as google_exceptions

import config
import marketplace_storage
from marketplace_errors import StoreNotConnected, Unavailable
from marketplace_models import Crop, Interest, InterestStatus, Owner
from marketplace_storage import (
    FirestoreCropStore, MemoryCropStore, _crop_to_dict, _dict_to_crop,
    connect_store, disconnect_store, get_store,
)


@pytest.fixture
def crop_with_interest():
    crop = Crop(
        id="crop-1",
        name="Wheat",
        quantity=250,
        owner=Owner(owner_email="farmer@example.com", owner_name="Ramesh"),
    )
    interest = Interest(
        id="int-1", crop_id="crop-1", user_email="buyer@example.com", user_name="Asha", quantity=25
    )
    return crop.model_copy(update={"interests": [interest]})


@pytest.fixture
def no_store(monkeypatch):
    monkeypatch.setattr(marketplace_storage, "_store", None)


def test_document_carries_interest_index_fields(crop_with_interest):
    document = _crop_to_dict(crop_with_interest)
    assert "id" not in document
    assert document["interest_ids"] == ["int-1"]
    assert document["interest_emails"] == ["buyer@example.com"]
    assert document["interests"][0]["status"] == "pending"
    assert document["quantity"] == "250"
    assert document["interests"][0]["quantity"] == "25"
    assert isinstance(document["created_at"], datetime)

    restored = _dict_to_crop("crop-1", document)
    assert restored.id == "crop-1"
    assert restored.interests[0].status == InterestStatus.PENDING
    assert restored.created_at == crop_with_interest.created_at
    assert restored.quantity == Decimal("250")


def test_memory_store_returns_copies(store, crop_with_interest):
    created = store.insert_crop(crop_with_interest)
    fetched = store.get_crop(created.id)
    fetched.interests.clear()
    assert len(store.get_crop(created.id).interests) == 1


def test_memory_update_where_skips_when_condition_fails(store, crop_with_interest):
    created = store.insert_crop(crop_with_interest)
    modified = store.update_where(
        created.id,
        lambda crop: crop.quantity >= 1000,
        lambda crop: crop.model_copy(update={"quantity": 0}),
    )
    assert modified == 0
    assert store.get_crop(created.id).quantity == 250


def test_memory_update_where_applies_mutation(store, crop_with_interest):
    created = store.insert_crop(crop_with_interest)
    modified = store.update_where(
        created.id,
        lambda crop: crop.quantity >= 25,
        lambda crop: crop.model_copy(update={"quantity": crop.quantity - 25}),
    )
    assert modified == 1
    assert store.get_crop(created.id).quantity == 225
    assert store.update_where("missing", lambda crop: True, lambda crop: crop) == 0


def test_memory_lookups(store, crop_with_interest):
    created = store.insert_crop(crop_with_interest)
    assert store.find_crop_by_interest("int-1").id == created.id
    assert store.find_crop_by_interest("int-2") is None
    assert [c.id for c in store.find_crops_by_interest_email("buyer@example.com")] == [created.id]
    assert [c.id for c in store.find_crops_by_owner("farmer@example.com")] == [created.id]
    assert store.delete_crop(created.id) is True
    assert store.delete_crop(created.id) is False


def test_get_store_before_connect(no_store):
    with pytest.raises(StoreNotConnected):
        get_store()


def test_connect_store_once_and_reuse(no_store):
    store = connect_store("memory")
    assert isinstance(store, MemoryCropStore)
    assert connect_store("memory") is store
    assert get_store() is store
    disconnect_store()
    with pytest.raises(StoreNotConnected):
        get_store()


def test_connect_store_unknown_backend(no_store):
    with pytest.raises(ValueError):
        connect_store("redis")


def test_firestore_errors_surface_as_unavailable():
    client = MagicMock()
    document = client.collection.return_value.document.return_value
    document.get.side_effect = google_exceptions.DeadlineExceeded("deadline")

    store = FirestoreCropStore(client=client, collection_name="crops", timeout=2)

    with pytest.raises(Unavailable):
        store.get_crop("crop-1")
    document.get.assert_called_once_with(timeout=2)


def test_firestore_get_crop_maps_document(crop_with_interest):
    client = MagicMock()
    snapshot = MagicMock(exists=True, id="crop-1")
    snapshot.to_dict.return_value = _crop_to_dict(crop_with_interest)
    client.collection.return_value.document.return_value.get.return_value = snapshot

    store = FirestoreCropStore(client=client, collection_name="crops", timeout=2)
    crop = store.get_crop("crop-1")

    assert crop.id == "crop-1"
    assert crop.find_interest("int-1").user_name == "Asha"
    assert store.get_crop("bad/path") is None


def _snapshot(crop):
    snapshot = MagicMock(exists=True, id=crop.id)
    snapshot.to_dict.return_value = _crop_to_dict(crop)
    return snapshot


@pytest.fixture
def inline_transactions(monkeypatch):
    """Run transactional functions directly with the mock transaction"""
    monkeypatch.setattr(marketplace_storage.firestore, "transactional", lambda func: func)


def test_firestore_update_where_skips_when_condition_fails(crop_with_interest, inline_transactions):
    client = MagicMock()
    transaction = client.transaction.return_value
    document = client.collection.return_value.document.return_value
    document.get.return_value = _snapshot(crop_with_interest)

    store = FirestoreCropStore(client=client, collection_name="crops", timeout=2)
    modified = store.update_where(
        "crop-1",
        lambda crop: crop.quantity >= 1000,
        lambda crop: crop.model_copy(update={"quantity": 0}),
    )

    assert modified == 0
    client.transaction.assert_called_once_with(max_attempts=config.TRANSACTION_MAX_ATTEMPTS)
    document.get.assert_called_once_with(transaction=transaction, timeout=2)
    transaction.set.assert_not_called()


def test_firestore_update_where_writes_mutation(crop_with_interest, inline_transactions):
    client = MagicMock()
    transaction = client.transaction.return_value
    document = client.collection.return_value.document.return_value
    document.get.return_value = _snapshot(crop_with_interest)
    second = Interest(
        id="int-2", crop_id="crop-1", user_email="trader@example.com", user_name="Vikram", quantity=40
    )

    store = FirestoreCropStore(client=client, collection_name="crops", timeout=2)
    modified = store.update_where(
        "crop-1",
        lambda crop: crop.find_interest_by_email("trader@example.com") is None,
        lambda crop: crop.model_copy(
            update={"quantity": crop.quantity - 25, "interests": crop.interests + [second]}
        ),
    )

    assert modified == 1
    transaction.set.assert_called_once()
    written_ref, written = transaction.set.call_args.args
    assert written_ref is document
    assert written["quantity"] == "225"
    assert written["interest_ids"] == ["int-1", "int-2"]
    assert written["interest_emails"] == ["buyer@example.com", "trader@example.com"]
    assert "id" not in written


def test_firestore_update_where_missing_document(inline_transactions):
    client = MagicMock()
    client.collection.return_value.document.return_value.get.return_value = MagicMock(exists=False)

    store = FirestoreCropStore(client=client, collection_name="crops", timeout=2)

    assert store.update_where("crop-1", lambda crop: True, lambda crop: crop) == 0
    client.transaction.return_value.set.assert_not_called()


def test_firestore_exhausted_transaction_is_unavailable(monkeypatch):
    gave_up = MagicMock(side_effect=ValueError("Failed to commit transaction in 5 attempts."))
    monkeypatch.setattr(marketplace_storage.firestore, "transactional", lambda func: gave_up)

    store = FirestoreCropStore(client=MagicMock(), collection_name="crops", timeout=2)

    with pytest.raises(Unavailable) as exc_info:
        store.update_where("crop-1", lambda crop: True, lambda crop: crop)
    assert "5 attempts" in exc_info.value.details["reason"]


def test_firestore_find_crop_by_interest_queries_index(crop_with_interest):
    client = MagicMock()
    collection = client.collection.return_value
    limited = collection.where.return_value.limit.return_value
    limited.stream.return_value = [_snapshot(crop_with_interest)]

    store = FirestoreCropStore(client=client, collection_name="crops", timeout=2)
    crop = store.find_crop_by_interest("int-1")

    assert crop.id == "crop-1"
    field_filter = collection.where.call_args.kwargs["filter"]
    assert (field_filter.field_path, field_filter.op_string, field_filter.value) == (
        "interest_ids", "array_contains", "int-1",
    )
    collection.where.return_value.limit.assert_called_once_with(1)
    limited.stream.assert_called_once_with(timeout=2)

    limited.stream.return_value = []
    assert store.find_crop_by_interest("int-9") is None


def test_firestore_find_crops_by_interest_email_queries_index(crop_with_interest):
    client = MagicMock()
    collection = client.collection.return_value
    collection.where.return_value.stream.return_value = [_snapshot(crop_with_interest)]

    store = FirestoreCropStore(client=client, collection_name="crops", timeout=2)
    crops = store.find_crops_by_interest_email("buyer@example.com")

    assert [crop.id for crop in crops] == ["crop-1"]
    field_filter = collection.where.call_args.kwargs["filter"]
    assert (field_filter.field_path, field_filter.op_string, field_filter.value) == (
        "interest_emails", "array_contains", "buyer@example.com",
    )


def test_firestore_latest_crops_orders_by_creation_time():
    client = MagicMock()
    collection = client.collection.return_value
    collection.order_by.return_value.limit.return_value.stream.return_value = []

    store = FirestoreCropStore(client=client, collection_name="crops", timeout=2)

    assert store.latest_crops(6) == []
    collection.order_by.assert_called_once_with(
        "created_at", direction=marketplace_storage.firestore.Query.DESCENDING
    )
    collection.order_by.return_value.limit.assert_called_once_with(6)
