"""
Document storage for the crop marketplace.

Crops are stored one document per crop, with their interests embedded as an
ordered list. Every write that depends on the current state of a crop goes
through CropStore.update_where, which evaluates a condition and applies a
mutation as one atomic unit inside the store.
"""
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Callable, Dict, List, Optional
import json
import logging
import os
import threading
import uuid

import firebase_admin
from firebase_admin import credentials, firestore
from google.api_core import exceptions as google_exceptions

import config
from marketplace_errors import StoreNotConnected, Unavailable
from marketplace_models import Crop

logger = logging.getLogger(__name__)

Condition = Callable[[Crop], bool]
Mutation = Callable[[Crop], Crop]


def firebase_credentials_configured() -> bool:
    """True when service account credentials are available from the environment"""
    if config.FIREBASE_CREDENTIALS_PATH and os.path.exists(config.FIREBASE_CREDENTIALS_PATH):
        return True
    return bool(config.FIREBASE_CREDENTIALS_JSON)


def is_firebase_ready() -> bool:
    """True once the default Firebase app has been initialized"""
    try:
        firebase_admin.get_app()
        return True
    except ValueError:
        return False


def initialize_firebase():
    """Initialize Firebase Admin SDK (once) and return the default app"""
    try:
        app = firebase_admin.get_app()
        logger.info("Firebase already initialized")
        return app
    except ValueError:
        # Firebase not initialized yet
        pass

    # Option 1: Use service account JSON file
    credentials_path = config.FIREBASE_CREDENTIALS_PATH
    if credentials_path and os.path.exists(credentials_path):
        app = firebase_admin.initialize_app(credentials.Certificate(credentials_path))
        logger.info(f"Firebase initialized with credentials from {credentials_path}")
        return app

    # Option 2: Use environment variable with JSON string
    if config.FIREBASE_CREDENTIALS_JSON:
        cred_dict = json.loads(config.FIREBASE_CREDENTIALS_JSON)
        app = firebase_admin.initialize_app(credentials.Certificate(cred_dict))
        logger.info(f"Firebase initialized for project {cred_dict.get('project_id')}")
        return app

    # Option 3: Use default credentials (for Google Cloud environments)
    try:
        app = firebase_admin.initialize_app()
        logger.info("Firebase initialized with default credentials")
        return app
    except Exception as e:
        logger.error(f"Failed to initialize Firebase: {e}")
        raise RuntimeError(
            "Firebase initialization failed. Please set FIREBASE_CREDENTIALS_PATH "
            "or FIREBASE_CREDENTIALS_JSON environment variable, or use default credentials."
        ) from e


def new_document_id() -> str:
    return uuid.uuid4().hex


def _crop_to_dict(crop: Crop) -> Dict:
    """Convert Crop model to a store document, including the lookup index fields"""
    crop_dict = crop.model_dump(exclude={"id"}, mode="json")
    # Native timestamps; latest_crops orders on created_at
    crop_dict["created_at"] = crop.created_at
    crop_dict["updated_at"] = crop.updated_at
    # Quantities stay exact decimal strings in the document
    crop_dict["quantity"] = str(crop.quantity)
    for interest_dict, interest in zip(crop_dict["interests"], crop.interests):
        interest_dict["quantity"] = str(interest.quantity)
    crop_dict["interest_ids"] = [interest.id for interest in crop.interests]
    crop_dict["interest_emails"] = [interest.user_email for interest in crop.interests]
    return crop_dict


def _dict_to_crop(doc_id: str, data: Dict) -> Crop:
    """Convert a store document to a Crop model"""
    data = dict(data)
    data["id"] = doc_id
    data.pop("interest_ids", None)
    data.pop("interest_emails", None)
    # Pydantic parses timestamps, decimal strings, owner and interest dicts back into models
    return Crop.model_validate(data)


class CropStore(ABC):
    """Crop document store used by the marketplace logic"""

    backend = ""

    @abstractmethod
    def get_crop(self, crop_id: str) -> Optional[Crop]:
        """Lookup by identifier"""

    @abstractmethod
    def find_crop_by_interest(self, interest_id: str) -> Optional[Crop]:
        """Find the crop whose embedded interests contain interest_id"""

    @abstractmethod
    def find_crops_by_interest_email(self, user_email: str) -> List[Crop]:
        """Crops with at least one interest from user_email"""

    @abstractmethod
    def find_crops_by_owner(self, owner_email: str) -> List[Crop]:
        pass

    @abstractmethod
    def list_crops(self) -> List[Crop]:
        pass

    @abstractmethod
    def latest_crops(self, limit: int) -> List[Crop]:
        """Newest crops first"""

    @abstractmethod
    def insert_crop(self, crop: Crop) -> Crop:
        """Store a new crop and return it with its generated ID"""

    @abstractmethod
    def delete_crop(self, crop_id: str) -> bool:
        pass

    @abstractmethod
    def update_where(self, crop_id: str, condition: Condition, mutation: Mutation) -> int:
        """
        Atomically apply mutation to the crop if condition holds.

        condition and mutation both see the crop as it is at commit time, so a
        concurrent writer cannot slip in between the check and the write.
        Returns the number of modified documents (0 or 1).
        """

    def ping(self) -> bool:
        return True

    def close(self) -> None:
        pass


class MemoryCropStore(CropStore):
    """In-memory crop store for local development and tests. Data will not persist."""

    backend = "memory"

    def __init__(self):
        self._crops: Dict[str, Crop] = {}
        self._lock = threading.Lock()
        logger.warning("Using in-memory crop storage. Data will not persist.")

    def _snapshot(self, crop: Crop) -> Crop:
        return crop.model_copy(deep=True)

    def get_crop(self, crop_id: str) -> Optional[Crop]:
        with self._lock:
            crop = self._crops.get(crop_id)
            return self._snapshot(crop) if crop else None

    def find_crop_by_interest(self, interest_id: str) -> Optional[Crop]:
        with self._lock:
            for crop in self._crops.values():
                if crop.find_interest(interest_id):
                    return self._snapshot(crop)
        return None

    def find_crops_by_interest_email(self, user_email: str) -> List[Crop]:
        with self._lock:
            return [
                self._snapshot(crop)
                for crop in self._crops.values()
                if crop.find_interest_by_email(user_email)
            ]

    def find_crops_by_owner(self, owner_email: str) -> List[Crop]:
        with self._lock:
            return [
                self._snapshot(crop)
                for crop in self._crops.values()
                if crop.owner.owner_email == owner_email
            ]

    def list_crops(self) -> List[Crop]:
        with self._lock:
            return [self._snapshot(crop) for crop in self._crops.values()]

    def latest_crops(self, limit: int) -> List[Crop]:
        crops = sorted(self.list_crops(), key=lambda c: c.created_at, reverse=True)
        return crops[:limit]

    def insert_crop(self, crop: Crop) -> Crop:
        stored = crop.model_copy(update={"id": crop.id or new_document_id()}, deep=True)
        with self._lock:
            self._crops[stored.id] = stored
        return self._snapshot(stored)

    def delete_crop(self, crop_id: str) -> bool:
        with self._lock:
            return self._crops.pop(crop_id, None) is not None

    def update_where(self, crop_id: str, condition: Condition, mutation: Mutation) -> int:
        with self._lock:
            current = self._crops.get(crop_id)
            if current is None or not condition(self._snapshot(current)):
                return 0
            updated = mutation(self._snapshot(current))
            self._crops[crop_id] = updated.model_copy(update={"id": crop_id}, deep=True)
            return 1


@contextmanager
def _store_call(action: str):
    """Translate Firestore client failures into Unavailable"""
    try:
        yield
    except google_exceptions.GoogleAPICallError as e:
        logger.error(f"Firestore error while {action}: {e}")
        raise Unavailable(f"Document store error while {action}", reason=str(e)) from e
    except google_exceptions.RetryError as e:
        logger.error(f"Firestore timed out while {action}: {e}")
        raise Unavailable(f"Document store timed out while {action}", reason=str(e)) from e


class FirestoreCropStore(CropStore):
    """Firebase Firestore storage for crops and their embedded interests"""

    backend = "firestore"

    def __init__(self, client=None, collection_name: Optional[str] = None, timeout: Optional[float] = None):
        if client is None:
            initialize_firebase()
            client = firestore.client()
        self.db = client
        self.timeout = timeout if timeout is not None else config.STORE_TIMEOUT_SECONDS
        self.max_attempts = config.TRANSACTION_MAX_ATTEMPTS
        self.crops_collection = self.db.collection(collection_name or config.CROPS_COLLECTION)
        logger.info("FirestoreCropStore initialized with Firebase Firestore")

    def _doc_ref(self, crop_id: str):
        if not crop_id or "/" in crop_id:
            return None
        return self.crops_collection.document(crop_id)

    def _query_crops(self, query, action: str) -> List[Crop]:
        with _store_call(action):
            return [_dict_to_crop(doc.id, doc.to_dict()) for doc in query.stream(timeout=self.timeout)]

    def get_crop(self, crop_id: str) -> Optional[Crop]:
        doc_ref = self._doc_ref(crop_id)
        if doc_ref is None:
            return None
        with _store_call(f"getting crop {crop_id}"):
            doc = doc_ref.get(timeout=self.timeout)
        if not doc.exists:
            return None
        return _dict_to_crop(doc.id, doc.to_dict())

    def find_crop_by_interest(self, interest_id: str) -> Optional[Crop]:
        query = self.crops_collection.where(
            filter=firestore.FieldFilter("interest_ids", "array_contains", interest_id)
        ).limit(1)
        crops = self._query_crops(query, f"finding crop for interest {interest_id}")
        return crops[0] if crops else None

    def find_crops_by_interest_email(self, user_email: str) -> List[Crop]:
        query = self.crops_collection.where(
            filter=firestore.FieldFilter("interest_emails", "array_contains", user_email)
        )
        return self._query_crops(query, f"finding crops with interests from {user_email}")

    def find_crops_by_owner(self, owner_email: str) -> List[Crop]:
        query = self.crops_collection.where(
            filter=firestore.FieldFilter("owner.owner_email", "==", owner_email)
        )
        return self._query_crops(query, f"finding crops owned by {owner_email}")

    def list_crops(self) -> List[Crop]:
        return self._query_crops(self.crops_collection, "listing crops")

    def latest_crops(self, limit: int) -> List[Crop]:
        query = self.crops_collection.order_by(
            "created_at", direction=firestore.Query.DESCENDING
        ).limit(limit)
        return self._query_crops(query, "listing latest crops")

    def insert_crop(self, crop: Crop) -> Crop:
        with _store_call("creating crop"):
            _, doc_ref = self.crops_collection.add(_crop_to_dict(crop), timeout=self.timeout)
        logger.info(f"Created crop {doc_ref.id} for owner {crop.owner.owner_email} in Firebase")
        return crop.model_copy(update={"id": doc_ref.id})

    def delete_crop(self, crop_id: str) -> bool:
        doc_ref = self._doc_ref(crop_id)
        if doc_ref is None:
            return False
        with _store_call(f"deleting crop {crop_id}"):
            if not doc_ref.get(timeout=self.timeout).exists:
                return False
            doc_ref.delete(timeout=self.timeout)
        logger.info(f"Deleted crop {crop_id} from Firebase")
        return True

    def update_where(self, crop_id: str, condition: Condition, mutation: Mutation) -> int:
        doc_ref = self._doc_ref(crop_id)
        if doc_ref is None:
            return 0
        timeout = self.timeout

        # Firestore re-runs the function on contention, so the condition is
        # always evaluated against the snapshot the commit is checked against.
        @firestore.transactional
        def apply(transaction) -> int:
            snapshot = doc_ref.get(transaction=transaction, timeout=timeout)
            if not snapshot.exists:
                return 0
            crop = _dict_to_crop(snapshot.id, snapshot.to_dict())
            if not condition(crop):
                return 0
            transaction.set(doc_ref, _crop_to_dict(mutation(crop)))
            return 1

        with _store_call(f"updating crop {crop_id}"):
            try:
                # The commit itself runs with the client default timeout
                return apply(self.db.transaction(max_attempts=self.max_attempts))
            except ValueError as e:
                # Raised once the transaction exhausts its contention retries
                logger.error(f"Transaction on crop {crop_id} gave up: {e}")
                raise Unavailable(f"Too much contention on crop {crop_id}", reason=str(e)) from e

    def ping(self) -> bool:
        with _store_call("pinging store"):
            list(self.crops_collection.limit(1).stream(timeout=self.timeout))
        return True

    def close(self) -> None:
        self.db.close()


# Process-wide store handle, set once at startup
_store: Optional[CropStore] = None


def connect_store(backend: Optional[str] = None) -> CropStore:
    """Connect the configured store once and reuse it afterwards"""
    global _store
    if _store is not None:
        return _store

    backend = (backend or config.STORE_BACKEND).lower()
    if backend == MemoryCropStore.backend:
        _store = MemoryCropStore()
    elif backend == FirestoreCropStore.backend:
        _store = FirestoreCropStore()
    else:
        raise ValueError(f"Unknown STORE_BACKEND '{backend}', expected 'firestore' or 'memory'")
    logger.info(f"Crop store connected ({_store.backend})")
    return _store


def get_store() -> CropStore:
    """Return the connected store; FastAPI dependency for every route"""
    if _store is None:
        raise StoreNotConnected()
    return _store


def disconnect_store() -> None:
    global _store
    if _store is not None:
        _store.close()
        logger.info(f"Crop store disconnected ({_store.backend})")
    _store = None
