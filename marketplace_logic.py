"""
KrishiLink marketplace - business logic

Interest submission, the stock ledger that commits accepted quantity against a
crop, and the interest status state machine, plus the crop operations around
them. Every function takes the CropStore it works on as its first argument.
"""
import logging
import uuid
from decimal import Decimal
from typing import Any, Dict, List, Optional

import config
from marketplace_errors import (
    AlreadyProcessed, Conflict, Forbidden, InsufficientStock, InvalidArgument,
    NotFound, Unavailable,
)
from marketplace_models import (
    Crop, CropCreate, CropDeletion, CropSummary, CropUpdate, Interest,
    InterestStatus, InterestSubmission, InterestSubmissionResult,
    InterestWithCrop, Owner, utc_now,
)
from marketplace_storage import CropStore

logger = logging.getLogger(__name__)


def _require_text(value: Optional[str], field: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidArgument(f"Missing required field: {field}", field=field)
    return value.strip()


def _require_quantity(value: Any, field: str = "quantity", allow_zero: bool = False) -> Decimal:
    """Return value as a finite Decimal, rejecting non-positive (or negative) amounts"""
    if isinstance(value, bool) or not isinstance(value, (int, float, Decimal)):
        raise InvalidArgument(f"{field} must be a number", field=field)
    # str() keeps 0.1 as Decimal("0.1") instead of its binary expansion
    value = Decimal(str(value)) if isinstance(value, float) else Decimal(value)
    if not value.is_finite():
        raise InvalidArgument(f"{field} must be a finite number", field=field)
    if value < 0 or (value == 0 and not allow_zero):
        bound = ">= 0" if allow_zero else "> 0"
        raise InvalidArgument(f"{field} must be {bound}", field=field, value=str(value))
    return value


def _load_crop(store: CropStore, crop_id: Optional[str]) -> Crop:
    crop_id = _require_text(crop_id, "crop_id")
    crop = store.get_crop(crop_id)
    if crop is None:
        raise NotFound(f"Crop {crop_id} not found", crop_id=crop_id)
    return crop


def _require_owner(crop: Crop, actor_email: Optional[str], action: str) -> None:
    if not crop.is_owned_by(actor_email):
        raise Forbidden(f"Unauthorized: You can only {action} your own crops", crop_id=crop.id)


def _with_interest_status(crop: Crop, interest_id: str, status: InterestStatus, now) -> List[Interest]:
    return [
        interest.model_copy(update={"status": status, "updated_at": now})
        if interest.id == interest_id else interest
        for interest in crop.interests
    ]


def _crop_summary(crop: Crop, include_quantity: bool = False, include_owner: bool = False) -> CropSummary:
    return CropSummary(
        id=crop.id,
        name=crop.name,
        type=crop.type,
        price_per_unit=crop.price_per_unit,
        unit=crop.unit,
        quantity=crop.quantity if include_quantity else None,
        location=crop.location,
        image=crop.image,
        owner=crop.owner if include_owner else None,
    )


# ---------------------------------------------------------------------------
# Interest submission
# ---------------------------------------------------------------------------

def submit_interest(store: CropStore, submission: InterestSubmission) -> InterestSubmissionResult:
    """
    Append a new pending interest to a crop.

    Rules:
    1. crop_id, user_email and user_name are required, quantity must be > 0
    2. One interest per buyer per crop
    3. Requests above the current stock are recorded with a warning; stock is
       only checked authoritatively when the interest is accepted
    """
    crop_id = _require_text(submission.crop_id, "crop_id")
    user_email = _require_text(submission.user_email, "user_email")
    user_name = _require_text(submission.user_name, "user_name")
    quantity = _require_quantity(submission.quantity)

    crop = _load_crop(store, crop_id)
    if crop.find_interest_by_email(user_email):
        raise Conflict(
            "You have already expressed interest in this crop",
            crop_id=crop_id, user_email=user_email,
        )

    warning = None
    if quantity > crop.quantity:
        warning = (
            f"Requested quantity {quantity:g} exceeds the currently available {crop.quantity:g} "
            f"{crop.unit}; the request is recorded but can only be accepted if stock allows"
        )
        logger.warning(f"Interest from {user_email} on crop {crop_id} exceeds stock: {warning}")

    now = utc_now()
    interest = Interest(
        id=uuid.uuid4().hex,
        crop_id=crop_id,
        user_email=user_email,
        user_name=user_name,
        quantity=quantity,
        message=submission.message or "",
        status=InterestStatus.PENDING,
        created_at=now,
    )

    modified = store.update_where(
        crop_id,
        lambda current: current.find_interest_by_email(user_email) is None,
        lambda current: current.model_copy(
            update={"interests": current.interests + [interest], "updated_at": now}
        ),
    )
    if modified == 0:
        current = store.get_crop(crop_id)
        if current is None:
            raise NotFound(f"Crop {crop_id} not found", crop_id=crop_id)
        if current.find_interest_by_email(user_email):
            raise Conflict(
                "You have already expressed interest in this crop",
                crop_id=crop_id, user_email=user_email,
            )
        raise Unavailable("Failed to add interest to crop", crop_id=crop_id)

    logger.info(f"Interest {interest.id} from {user_email} added to crop {crop_id} ({quantity:g})")
    return InterestSubmissionResult(interest_id=interest.id, warning=warning, interest=interest)


# ---------------------------------------------------------------------------
# Stock ledger
# ---------------------------------------------------------------------------

def accept_interest(store: CropStore, crop_id: str, interest_id: str) -> Crop:
    """
    Accept an interest and deduct its quantity from the crop in one atomic update.

    The first read only produces a friendly error. The conditional update
    re-checks stock and interest state at commit time, which is what keeps
    concurrent acceptances from overselling the crop.
    """
    crop = _load_crop(store, crop_id)
    interest = crop.find_interest(interest_id)
    if interest is None:
        raise NotFound(f"Interest {interest_id} not found", interest_id=interest_id, crop_id=crop.id)
    if interest.status == InterestStatus.ACCEPTED:
        raise AlreadyProcessed(f"Interest {interest_id} is already accepted", interest_id=interest_id)

    requested = interest.quantity
    if crop.quantity < requested:
        raise InsufficientStock(requested=requested, available=crop.quantity)

    def has_stock(current: Crop) -> bool:
        target = current.find_interest(interest_id)
        return (
            target is not None
            and target.status != InterestStatus.ACCEPTED
            and current.quantity >= requested
        )

    def commit(current: Crop) -> Crop:
        now = utc_now()
        return current.model_copy(update={
            "quantity": current.quantity - requested,
            "interests": _with_interest_status(current, interest_id, InterestStatus.ACCEPTED, now),
            "updated_at": now,
        })

    if store.update_where(crop.id, has_stock, commit) == 0:
        # Something changed between the read and the commit
        current = store.get_crop(crop.id)
        if current is None:
            raise NotFound(f"Crop {crop.id} not found", crop_id=crop.id)
        target = current.find_interest(interest_id)
        if target is None:
            raise NotFound(f"Interest {interest_id} not found", interest_id=interest_id, crop_id=crop.id)
        if target.status == InterestStatus.ACCEPTED:
            raise AlreadyProcessed(f"Interest {interest_id} is already accepted", interest_id=interest_id)
        logger.warning(
            f"Acceptance of interest {interest_id} lost a race on crop {crop.id}: "
            f"requested {requested:g}, available {current.quantity:g}"
        )
        raise InsufficientStock(requested=requested, available=current.quantity)

    logger.info(f"Interest {interest_id} accepted, crop {crop.id} quantity reduced by {requested:g}")
    return _reload(store, crop.id)


def _reload(store: CropStore, crop_id: str) -> Crop:
    crop = store.get_crop(crop_id)
    if crop is None:
        raise NotFound(f"Crop {crop_id} not found", crop_id=crop_id)
    return crop


# ---------------------------------------------------------------------------
# Interest status transitions
# ---------------------------------------------------------------------------

def parse_status(status: Any) -> InterestStatus:
    if isinstance(status, InterestStatus):
        return status
    try:
        return InterestStatus(str(status).strip().lower())
    except ValueError:
        allowed = ", ".join(s.value for s in InterestStatus)
        raise InvalidArgument(f"Invalid status '{status}'. Must be one of: {allowed}", status=status)


def _resolve_crop_for_interest(store: CropStore, interest_id: str, crop_id: Optional[str]) -> Crop:
    if crop_id:
        crop = _load_crop(store, crop_id)
    else:
        crop = store.find_crop_by_interest(interest_id)
    if crop is None or crop.find_interest(interest_id) is None:
        raise NotFound(f"Interest {interest_id} not found", interest_id=interest_id)
    return crop


def transition_interest(
    store: CropStore,
    interest_id: str,
    status: Any,
    crop_id: Optional[str] = None,
    actor_email: Optional[str] = None,
) -> Crop:
    """
    Move an interest to a new status and return the updated crop.

    accepted goes through the stock ledger. Other statuses are plain overwrites,
    except that an accepted interest never leaves accepted.
    When actor_email is given, the crop owner may set any status and the buyer
    may only cancel their own interest.
    """
    interest_id = _require_text(interest_id, "interest_id")
    target = parse_status(status)
    crop = _resolve_crop_for_interest(store, interest_id, crop_id)
    interest = crop.find_interest(interest_id)

    if actor_email is not None and not crop.is_owned_by(actor_email):
        if interest.user_email != actor_email or target != InterestStatus.CANCELLED:
            raise Forbidden(
                "Only the crop owner can change this interest's status",
                interest_id=interest_id,
            )

    if target == InterestStatus.ACCEPTED:
        return accept_interest(store, crop.id, interest_id)

    if interest.status == InterestStatus.ACCEPTED:
        raise AlreadyProcessed(
            f"Interest {interest_id} is already accepted and cannot be {target.value}",
            interest_id=interest_id,
        )

    def not_accepted(current: Crop) -> bool:
        found = current.find_interest(interest_id)
        return found is not None and found.status != InterestStatus.ACCEPTED

    def overwrite(current: Crop) -> Crop:
        now = utc_now()
        return current.model_copy(update={
            "interests": _with_interest_status(current, interest_id, target, now),
            "updated_at": now,
        })

    if store.update_where(crop.id, not_accepted, overwrite) == 0:
        current = _reload(store, crop.id)
        found = current.find_interest(interest_id)
        if found is None:
            raise NotFound(f"Interest {interest_id} not found", interest_id=interest_id)
        if found.status == InterestStatus.ACCEPTED:
            raise AlreadyProcessed(f"Interest {interest_id} is already accepted", interest_id=interest_id)
        raise Unavailable("Failed to update interest status", interest_id=interest_id)

    logger.info(f"Interest {interest_id} on crop {crop.id} set to {target.value}")
    return _reload(store, crop.id)


# ---------------------------------------------------------------------------
# Crops
# ---------------------------------------------------------------------------

def create_crop(store: CropStore, owner: Owner, payload: CropCreate) -> Crop:
    """List a new crop for owner with an empty interest list"""
    owner_email = _require_text(owner.owner_email, "owner_email")
    now = utc_now()
    crop = Crop(
        name=_require_text(payload.name, "name"),
        type=payload.type,
        price_per_unit=float(_require_quantity(payload.price_per_unit, "price_per_unit", allow_zero=True)),
        unit=payload.unit or "kg",
        quantity=_require_quantity(payload.quantity, "quantity", allow_zero=True),
        description=payload.description,
        location=payload.location,
        image=payload.image,
        owner=Owner(owner_email=owner_email, owner_name=owner.owner_name),
        status="pending",
        created_at=now,
        updated_at=now,
        interests=[],
    )
    created = store.insert_crop(crop)
    logger.info(f"Created crop {created.id} ({created.name}) for {owner_email}")
    return created


def get_crop(store: CropStore, crop_id: str) -> Crop:
    return _load_crop(store, crop_id)


def _matches(crop: Crop, needle: str) -> bool:
    return any(
        needle in (value or "").lower()
        for value in (crop.name, crop.type, crop.location, crop.description)
    )


def list_crops(store: CropStore, search: Optional[str] = None) -> List[Crop]:
    """All crops, optionally filtered by a case-insensitive substring of name, type, location or description"""
    crops = store.list_crops()
    if search and search.strip():
        needle = search.strip().lower()
        crops = [crop for crop in crops if _matches(crop, needle)]
    return crops


def latest_crops(store: CropStore, limit: Optional[int] = None) -> List[Crop]:
    return store.latest_crops(limit or config.LATEST_CROPS_LIMIT)


def list_owner_crops(store: CropStore, owner_email: str) -> List[Crop]:
    return store.find_crops_by_owner(_require_text(owner_email, "owner_email"))


def update_crop(store: CropStore, crop_id: str, actor_email: Optional[str], changes: CropUpdate) -> Crop:
    """Apply owner edits to a crop's descriptive fields"""
    crop = _load_crop(store, crop_id)
    _require_owner(crop, actor_email, "update")

    updates: Dict[str, Any] = {
        field: value
        for field, value in changes.model_dump(exclude_unset=True).items()
        if field in config.EDITABLE_CROP_FIELDS and value is not None
    }
    if not updates:
        raise InvalidArgument("No changes made to the crop", crop_id=crop.id)
    if "name" in updates:
        updates["name"] = _require_text(updates["name"], "name")
    if "price_per_unit" in updates:
        updates["price_per_unit"] = float(
            _require_quantity(updates["price_per_unit"], "price_per_unit", allow_zero=True)
        )

    modified = store.update_where(
        crop.id,
        lambda current: current.is_owned_by(actor_email),
        lambda current: current.model_copy(update={**updates, "updated_at": utc_now()}),
    )
    if modified == 0:
        current = _reload(store, crop.id)
        _require_owner(current, actor_email, "update")
        raise Unavailable("Failed to update crop", crop_id=crop.id)

    logger.info(f"Crop {crop.id} updated by {actor_email}: {sorted(updates)}")
    return _reload(store, crop.id)


def delete_crop(store: CropStore, crop_id: str, actor_email: Optional[str]) -> CropDeletion:
    """Delete a crop together with its interests, reporting interests still pending"""
    crop = _load_crop(store, crop_id)
    _require_owner(crop, actor_email, "delete")

    pending = sum(1 for interest in crop.interests if interest.status == InterestStatus.PENDING)
    if not store.delete_crop(crop.id):
        raise NotFound(f"Crop {crop.id} not found", crop_id=crop.id)

    warning = None
    if pending:
        warning = f"{pending} pending interest(s) were removed together with the crop"
        logger.warning(f"Crop {crop.id} deleted with {pending} pending interest(s)")
    logger.info(f"Crop {crop.id} deleted by {actor_email}")
    return CropDeletion(crop_id=crop.id, deleted=True, pending_interests=pending, warning=warning)


# ---------------------------------------------------------------------------
# Interest queries
# ---------------------------------------------------------------------------

def all_interests(store: CropStore) -> List[Interest]:
    return [interest for crop in store.list_crops() for interest in crop.interests]


def sent_interests(store: CropStore, user_email: str) -> List[InterestWithCrop]:
    """Interests a buyer has sent, each with the crop it targets"""
    user_email = _require_text(user_email, "email")
    return [
        InterestWithCrop(**interest.model_dump(), crop_details=_crop_summary(crop, include_owner=True))
        for crop in store.find_crops_by_interest_email(user_email)
        for interest in crop.interests
        if interest.user_email == user_email
    ]


def received_interests(store: CropStore, owner_email: str) -> List[InterestWithCrop]:
    """Interests received on an owner's crops, each with the crop's remaining quantity"""
    owner_email = _require_text(owner_email, "email")
    return [
        InterestWithCrop(**interest.model_dump(), crop_details=_crop_summary(crop, include_quantity=True))
        for crop in store.find_crops_by_owner(owner_email)
        for interest in crop.interests
    ]


def crop_interests(store: CropStore, crop_id: str, actor_email: Optional[str]) -> List[Interest]:
    crop = _load_crop(store, crop_id)
    _require_owner(crop, actor_email, "view interests on")
    return crop.interests
