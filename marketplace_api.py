"""
FastAPI endpoints for the KrishiLink crop marketplace
"""
import logging
from typing import Any, List, Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

import marketplace_logic as logic
from marketplace_auth import get_current_user
from marketplace_errors import (
    AlreadyProcessed, Conflict, Forbidden, InsufficientStock, InvalidArgument,
    MarketplaceError, NotFound, Unavailable,
)
from marketplace_models import (
    CropCreate, CropUpdate, InterestSubmission, Owner, StatusTransitionRequest,
    UserIdentity,
)
from marketplace_storage import CropStore, get_store

logger = logging.getLogger(__name__)

crops_router = APIRouter(prefix="/crops", tags=["crops"])
interests_router = APIRouter(prefix="/interests", tags=["interests"])

router = APIRouter()

# First match wins; StoreNotConnected maps through Unavailable
ERROR_STATUS_CODES = (
    (InvalidArgument, 400),
    (Forbidden, 403),
    (NotFound, 404),
    (InsufficientStock, 409),
    (AlreadyProcessed, 409),
    (Conflict, 409),
    (Unavailable, 503),
)


def status_code_for(error: MarketplaceError) -> int:
    for error_type, status_code in ERROR_STATUS_CODES:
        if isinstance(error, error_type):
            return status_code
    return 500


def _ok(message: str, data: Any = None, warning: Optional[str] = None) -> dict:
    response = {"success": True, "message": message, "data": data}
    if warning:
        response["warning"] = warning
    return response


async def marketplace_error_handler(request: Request, exc: MarketplaceError) -> JSONResponse:
    status_code = status_code_for(exc)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    else:
        logger.info(f"{request.method} {request.url.path} rejected: {exc}")
    return JSONResponse(
        status_code=status_code,
        content=jsonable_encoder({"success": False, "message": exc.message, "error": exc.as_dict()}),
    )


def _invalid_fields(errors) -> List[str]:
    fields = []
    for error in errors:
        loc = [str(part) for part in error.get("loc", ()) if part not in ("body", "query", "path", "header")]
        field = ".".join(loc) or "body"
        if field not in fields:
            fields.append(field)
    return fields


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Report malformed request bodies and parameters as InvalidArgument (400)"""
    errors = exc.errors()
    fields = _invalid_fields(errors)
    if errors and all(error.get("type") == "missing" for error in errors):
        message = f"Missing required fields: {', '.join(fields)}"
    else:
        message = f"Invalid value for fields: {', '.join(fields)}"
    return await marketplace_error_handler(request, InvalidArgument(message, fields=fields))


async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    message = exc.detail if isinstance(exc.detail, str) else "Request failed"
    if exc.status_code == 404 and exc.detail == "Not Found":
        message = "Route not found"
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "message": message},
        headers=getattr(exc, "headers", None),
    )


def _owner_from(user: UserIdentity) -> Owner:
    return Owner(owner_email=user.email, owner_name=user.name)


# ---------------------------------------------------------------------------
# Crops
# ---------------------------------------------------------------------------

@crops_router.get("")
def list_crops(search: Optional[str] = None, store: CropStore = Depends(get_store)):
    """Fetch all crops, optionally filtered by a search term"""
    crops = logic.list_crops(store, search)
    return _ok("Crops fetched successfully", crops)


@crops_router.get("/latest")
def latest_crops(store: CropStore = Depends(get_store)):
    """Latest crops for the homepage"""
    return _ok("Latest crops fetched successfully", logic.latest_crops(store))


@crops_router.get("/interest")
def all_interests(store: CropStore = Depends(get_store)):
    """Every interest across all crops"""
    return _ok("All interests fetched successfully", logic.all_interests(store))


@crops_router.get("/mine")
def my_crops(user: UserIdentity = Depends(get_current_user), store: CropStore = Depends(get_store)):
    """Crops listed by the caller"""
    return _ok("Your crops fetched successfully", logic.list_owner_crops(store, user.email))


@crops_router.get("/{crop_id}")
def get_crop(crop_id: str, store: CropStore = Depends(get_store)):
    return _ok("Crop fetched successfully", logic.get_crop(store, crop_id))


@crops_router.post("", status_code=201)
def create_crop(
    payload: CropCreate,
    user: UserIdentity = Depends(get_current_user),
    store: CropStore = Depends(get_store),
):
    """
    List a new crop owned by the caller.

    Example:
    {
        "name": "Tomato",
        "type": "Vegetable",
        "price_per_unit": 30.0,
        "unit": "kg",
        "quantity": 500,
        "location": "Pune"
    }
    """
    crop = logic.create_crop(store, _owner_from(user), payload)
    return _ok("Crop added successfully", crop)


@crops_router.put("/{crop_id}")
def update_crop(
    crop_id: str,
    changes: CropUpdate,
    user: UserIdentity = Depends(get_current_user),
    store: CropStore = Depends(get_store),
):
    """Owner edits. Quantity is not editable; it only moves when interests are accepted."""
    crop = logic.update_crop(store, crop_id, user.email, changes)
    return _ok("Crop updated successfully", crop)


@crops_router.delete("/{crop_id}")
def delete_crop(
    crop_id: str,
    user: UserIdentity = Depends(get_current_user),
    store: CropStore = Depends(get_store),
):
    """Delete a crop and all of its interests"""
    result = logic.delete_crop(store, crop_id, user.email)
    return _ok("Crop deleted successfully", result, warning=result.warning)


@crops_router.get("/{crop_id}/interests")
def crop_interests(
    crop_id: str,
    user: UserIdentity = Depends(get_current_user),
    store: CropStore = Depends(get_store),
):
    """Interests on one of the caller's crops"""
    return _ok("Crop interests fetched successfully", logic.crop_interests(store, crop_id, user.email))


# ---------------------------------------------------------------------------
# Interests
# ---------------------------------------------------------------------------

@interests_router.post("", status_code=201)
def submit_interest(
    submission: InterestSubmission,
    user: UserIdentity = Depends(get_current_user),
    store: CropStore = Depends(get_store),
):
    """
    Express interest in a crop.

    Example:
    {
        "crop_id": "5f0c...",
        "quantity": 40,
        "message": "Can pick up on Friday"
    }
    """
    if submission.user_email and submission.user_email != user.email:
        raise Forbidden("You can only submit interests as yourself", user_email=submission.user_email)
    submission = submission.model_copy(update={
        "user_email": user.email,
        "user_name": submission.user_name or user.name,
    })
    result = logic.submit_interest(store, submission)
    return _ok("Interest added successfully", result, warning=result.warning)


@interests_router.get("/sent")
def sent_interests(email: Optional[str] = Query(None), store: CropStore = Depends(get_store)):
    """Interests sent by a buyer"""
    if not email:
        raise InvalidArgument("Email query parameter is required", field="email")
    return _ok("Sent interests fetched successfully", logic.sent_interests(store, email))


@interests_router.get("/received")
def received_interests(email: Optional[str] = Query(None), store: CropStore = Depends(get_store)):
    """Interests received on a producer's crops"""
    if not email:
        raise InvalidArgument("Email query parameter is required", field="email")
    return _ok("Received interests fetched successfully", logic.received_interests(store, email))


@interests_router.put("/status")
def update_interest_status(
    request: StatusTransitionRequest,
    user: UserIdentity = Depends(get_current_user),
    store: CropStore = Depends(get_store),
):
    """
    Change an interest's status.

    Accepting deducts the interest's quantity from the crop atomically; the
    request fails with 409 when the crop no longer has enough stock.
    """
    target = logic.parse_status(request.status)
    crop = logic.transition_interest(
        store,
        request.interest_id,
        target,
        crop_id=request.crop_id,
        actor_email=user.email,
    )
    return _ok(f"Interest {target.value} successfully", crop)


router.include_router(crops_router)
router.include_router(interests_router)
