import logging
import math
import uuid
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from toy_rental.config import get_settings
from toy_rental.db.base import Base
from toy_rental.db.deps import get_db
from toy_rental.db.session import engine
from toy_rental.logging_config import configure_logging
from toy_rental.models.enums import UserRole
from toy_rental.models.rental_models import Category, Toy, ToyImage, User
from toy_rental.schemas.rentals import CreateRentalDto, ReturnRentalDto
from toy_rental.schemas.toys import CategoryUpsert, ToyImageCreate, ToyUpsert
from toy_rental.schemas.users import LoginRequest, RegisterRequest, UserUpdate
from toy_rental.services.errors import (
    AccountError,
    AccountInUse,
    DuplicateAccount,
    InsufficientStock,
    InvalidCondition,
    InvalidCredentials,
    InvalidRentalRequest,
    InvalidRentalState,
    InvalidReturnDate,
    PersistenceFailure,
    RentalError,
    RentalNotFound,
    ToyNotFound,
    UnknownRentalItem,
)
from toy_rental.services.rental_service import RentalService, serialize_rental
from toy_rental.services.repository import Repository
from toy_rental.services.session_service import SessionService
from toy_rental.services.toy_service import (
    add_toy_image,
    apply_toy_payload,
    serialize_category,
    serialize_image,
    serialize_toy,
    toy_has_rentals,
)
from toy_rental.services.user_service import (
    authenticate,
    delete_account,
    register_user,
    serialize_user,
    update_profile,
)

SETTINGS = get_settings()
API_LOGGER = logging.getLogger("toy_rental.api")
AUTH_LOGGER = logging.getLogger("toy_rental.auth")
ACCESS_TOKEN_COOKIE = "access_token"

ERROR_STATUS = {
    ToyNotFound: 404,
    RentalNotFound: 404,
    InsufficientStock: 409,
    InvalidRentalState: 409,
    InvalidReturnDate: 400,
    UnknownRentalItem: 400,
    InvalidCondition: 400,
    InvalidRentalRequest: 400,
    PersistenceFailure: 500,
    DuplicateAccount: 409,
    AccountInUse: 409,
    InvalidCredentials: 401,
}


@asynccontextmanager
async def lifespan(_app: FastAPI):
    configure_logging(SETTINGS)
    Base.metadata.create_all(bind=engine)
    yield


app = FastAPI(title="Toy Rental API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=list(SETTINGS.cors_allow_origins),
    allow_credentials=SETTINGS.cors_allow_credentials,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _http_error(exc: Exception) -> HTTPException:
    for error_type in type(exc).__mro__:
        if error_type in ERROR_STATUS:
            status_code = ERROR_STATUS[error_type]
            break
    else:
        status_code = 400
    if status_code >= 500:
        API_LOGGER.error("Request failed: %s", exc)
        return HTTPException(status_code=status_code, detail=str(exc) or "Internal error.")
    API_LOGGER.info("Request rejected status=%s reason=%s", status_code, exc)
    return HTTPException(status_code=status_code, detail=str(exc))


def _page_params(page: int, limit: int) -> tuple[int, int, int]:
    page = max(page, 1)
    limit = min(max(limit, 1), SETTINGS.max_page_limit)
    return page, limit, (page - 1) * limit


def _paginated(rows: list[dict], total: int, page: int, limit: int) -> dict:
    return {
        "data": rows,
        "meta": {
            "page": page,
            "limit": limit,
            "total": total,
            "total_page": math.ceil(total / limit) if total else 0,
        },
    }


def _commit_or_500(db: Session, action: str) -> None:
    try:
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        API_LOGGER.exception("Could not %s", action)
        raise HTTPException(status_code=500, detail=f"Could not {action}.") from exc


def _delete_or_404(db: Session, model, entity_id: uuid.UUID, label: str) -> None:
    try:
        deleted = Repository(db, model).delete(entity_id)
    except SQLAlchemyError as exc:
        db.rollback()
        API_LOGGER.exception("Could not delete %s id=%s", label, entity_id)
        raise HTTPException(status_code=500, detail=f"Could not delete {label}.") from exc
    if not deleted:
        raise HTTPException(status_code=404, detail=f"{label.capitalize()} not found")
    _commit_or_500(db, f"delete {label}")


def _session_token(request: Request, x_session_token: str | None) -> str | None:
    return x_session_token or request.cookies.get(ACCESS_TOKEN_COOKIE)


def _get_active_session(db: Session, request: Request, x_session_token: str | None) -> dict | None:
    return SessionService(db, SETTINGS, AUTH_LOGGER).resolve(_session_token(request, x_session_token))


def _require_session_or_401(db: Session, request: Request, x_session_token: str | None) -> dict:
    session = _get_active_session(db, request, x_session_token)
    if not session:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return session


def _require_admin_session_or_403(db: Session, request: Request, x_session_token: str | None) -> dict:
    session = _require_session_or_401(db, request, x_session_token)
    if session.get("role") != UserRole.ADMIN.value:
        raise HTTPException(status_code=403, detail="Admin role required.")
    return session


def _token_response(response: Response, user: User, token) -> dict:
    response.set_cookie(
        ACCESS_TOKEN_COOKIE,
        token.access_token,
        max_age=SETTINGS.access_token_exp_hours * 3600,
        httponly=True,
        samesite="lax",
        secure=SETTINGS.is_prod,
    )
    return {
        "user": serialize_user(user),
        "access_token": token.access_token,
        "refresh_token": token.refresh_token,
        "access_token_expires_at": token.access_token_expires_at,
        "refresh_token_expires_at": token.refresh_token_expires_at,
    }


def _rental_service(db: Session) -> RentalService:
    return RentalService(db, settings=SETTINGS, logger=logging.getLogger("toy_rental.rentals"))


def _load_toy_or_404(db: Session, toy_id: uuid.UUID) -> Toy:
    stmt = (
        select(Toy)
        .options(selectinload(Toy.categories), selectinload(Toy.images))
        .where(Toy.id == toy_id)
        .execution_options(populate_existing=True)
    )
    toy = db.execute(stmt).scalars().first()
    if not toy:
        raise HTTPException(status_code=404, detail="Toy not found")
    return toy


@app.get("/healthz")
def healthcheck():
    return {"status": "ok"}


@app.get("/api/healthz")
def healthcheck_api(db: Session = Depends(get_db)):
    try:
        db.execute(text("SELECT 1"))
        return {"status": "ok"}
    except SQLAlchemyError as exc:
        raise HTTPException(status_code=503, detail=f"db_unavailable: {exc}") from exc


# Users

@app.post("/api/user/auth/register", status_code=201)
def register(payload: RegisterRequest, db: Session = Depends(get_db)):
    try:
        user = register_user(
            db,
            email=payload.email,
            password=payload.password,
            full_name=payload.full_name,
            phone_number=payload.phone_number,
            address=payload.address,
        )
    except AccountError as exc:
        db.rollback()
        raise _http_error(exc) from exc
    _commit_or_500(db, "register user")
    return serialize_user(user)


@app.post("/api/user/auth/login")
def login(payload: LoginRequest, response: Response, db: Session = Depends(get_db)):
    try:
        user = authenticate(db, payload.email, payload.password)
    except InvalidCredentials as exc:
        AUTH_LOGGER.warning("Login failed email=%s", payload.email)
        raise _http_error(exc) from exc
    token = SessionService(db, SETTINGS, AUTH_LOGGER).issue(user)
    _commit_or_500(db, "log in")
    AUTH_LOGGER.info("Login success user_id=%s", user.id)
    return _token_response(response, user, token)


@app.post("/api/user/auth/refresh")
def refresh_token(payload: dict, response: Response, db: Session = Depends(get_db)):
    token = SessionService(db, SETTINGS, AUTH_LOGGER).refresh(str(payload.get("refresh_token") or ""))
    if token is None:
        raise HTTPException(status_code=401, detail="Unauthorized")
    _commit_or_500(db, "refresh token")
    return _token_response(response, token.user, token)


@app.delete("/api/user/auth/logout")
def logout(
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _require_session_or_401(db, request, x_session_token)
    SessionService(db, SETTINGS, AUTH_LOGGER).revoke(_session_token(request, x_session_token))
    _commit_or_500(db, "log out")
    response.delete_cookie(ACCESS_TOKEN_COOKIE)
    return {"ok": True}


@app.get("/api/user/auth/me")
def me(
    request: Request,
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    session = _require_session_or_401(db, request, x_session_token)
    user = Repository(db, User).get(session.get("sub"))
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return {"user": serialize_user(user)}


def _require_own_account(db: Session, request: Request, x_session_token: str | None, user_id: uuid.UUID) -> User:
    session = _require_session_or_401(db, request, x_session_token)
    if session.get("sub") != str(user_id):
        AUTH_LOGGER.warning("Account access denied sub=%s target=%s", session.get("sub"), user_id)
        raise HTTPException(status_code=401, detail="User ID does not match")
    user = Repository(db, User).get(user_id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return user


@app.put("/api/user/auth/{user_id}")
def update_account(
    user_id: uuid.UUID,
    payload: UserUpdate,
    request: Request,
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    user = _require_own_account(db, request, x_session_token, user_id)
    update_profile(db, user, payload.model_dump(exclude_unset=True))
    _commit_or_500(db, "update user")
    return serialize_user(user)


@app.delete("/api/user/auth/{user_id}")
def delete_own_account(
    user_id: uuid.UUID,
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    user = _require_own_account(db, request, x_session_token, user_id)
    try:
        delete_account(db, user)
    except AccountError as exc:
        db.rollback()
        raise _http_error(exc) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        API_LOGGER.exception("Could not delete user id=%s", user_id)
        raise HTTPException(status_code=500, detail="Could not delete user.") from exc
    _commit_or_500(db, "delete user")
    response.delete_cookie(ACCESS_TOKEN_COOKIE)
    AUTH_LOGGER.info("Account deleted user_id=%s", user_id)
    return {"message": "User deleted"}


@app.get("/api/admin/users")
def list_users(
    request: Request,
    page: int = Query(1),
    limit: int = Query(SETTINGS.default_page_limit),
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _require_admin_session_or_403(db, request, x_session_token)
    page, limit, offset = _page_params(page, limit)
    users, total = Repository(db, User).list(limit, offset, order_by=User.email)
    return _paginated([serialize_user(user) for user in users], total, page, limit)


@app.get("/api/admin/user/{user_id}")
def get_user(
    user_id: uuid.UUID,
    request: Request,
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _require_admin_session_or_403(db, request, x_session_token)
    user = Repository(db, User).get(user_id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return serialize_user(user)


# Categories

@app.get("/api/categories")
def list_categories(page: int = Query(1), limit: int = Query(SETTINGS.default_page_limit), db: Session = Depends(get_db)):
    page, limit, offset = _page_params(page, limit)
    categories, total = Repository(db, Category).list(limit, offset, order_by=Category.name)
    return _paginated([serialize_category(category) for category in categories], total, page, limit)


@app.get("/api/categories/{category_id}")
def get_category(category_id: uuid.UUID, db: Session = Depends(get_db)):
    category = Repository(db, Category).get(category_id)
    if not category:
        raise HTTPException(status_code=404, detail="Category not found")
    return serialize_category(category)


@app.post("/api/categories", status_code=201)
def create_category(
    payload: CategoryUpsert,
    request: Request,
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _require_admin_session_or_403(db, request, x_session_token)
    category = Repository(db, Category).add(Category(name=payload.name.strip(), description=payload.description))
    _commit_or_500(db, "create category")
    return serialize_category(category)


@app.put("/api/categories/{category_id}")
def update_category(
    category_id: uuid.UUID,
    payload: CategoryUpsert,
    request: Request,
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _require_admin_session_or_403(db, request, x_session_token)
    categories = Repository(db, Category)
    category = categories.get(category_id)
    if not category:
        raise HTTPException(status_code=404, detail="Category not found")
    categories.update(category, {"name": payload.name.strip(), "description": payload.description})
    _commit_or_500(db, "update category")
    return serialize_category(category)


@app.delete("/api/categories/{category_id}")
def delete_category(
    category_id: uuid.UUID,
    request: Request,
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _require_admin_session_or_403(db, request, x_session_token)
    _delete_or_404(db, Category, category_id, "category")
    return {"message": "Category deleted"}


# Toys

@app.get("/api/toys")
def list_toys(page: int = Query(1), limit: int = Query(SETTINGS.default_page_limit), db: Session = Depends(get_db)):
    page, limit, offset = _page_params(page, limit)
    toys, total = Repository(db, Toy).list(
        limit,
        offset,
        order_by=Toy.name,
        options=[selectinload(Toy.categories), selectinload(Toy.images)],
    )
    return _paginated([serialize_toy(toy) for toy in toys], total, page, limit)


@app.get("/api/toys/{toy_id}")
def get_toy(toy_id: uuid.UUID, db: Session = Depends(get_db)):
    return serialize_toy(_load_toy_or_404(db, toy_id))


@app.post("/api/toys", status_code=201)
def create_toy(
    payload: ToyUpsert,
    request: Request,
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _require_admin_session_or_403(db, request, x_session_token)
    toy = Toy()
    try:
        apply_toy_payload(db, toy, payload, creating=True)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    Repository(db, Toy).add(toy)
    _commit_or_500(db, "create toy")
    return serialize_toy(_load_toy_or_404(db, toy.id))


@app.put("/api/toys/{toy_id}")
def update_toy(
    toy_id: uuid.UUID,
    payload: ToyUpsert,
    request: Request,
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _require_admin_session_or_403(db, request, x_session_token)
    toy = _load_toy_or_404(db, toy_id)
    try:
        apply_toy_payload(db, toy, payload)
    except ValueError as exc:
        db.rollback()
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    _commit_or_500(db, "update toy")
    return serialize_toy(_load_toy_or_404(db, toy_id))


@app.delete("/api/toys/{toy_id}")
def delete_toy(
    toy_id: uuid.UUID,
    request: Request,
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _require_admin_session_or_403(db, request, x_session_token)
    if toy_has_rentals(db, toy_id):
        raise HTTPException(status_code=409, detail="Toy has rental history")
    _delete_or_404(db, Toy, toy_id, "toy")
    return {"message": "Toy deleted"}


@app.get("/api/toys/{toy_id}/images")
def list_toy_images(toy_id: uuid.UUID, db: Session = Depends(get_db)):
    toy = _load_toy_or_404(db, toy_id)
    return [serialize_image(image) for image in toy.images]


@app.post("/api/toys/{toy_id}/images", status_code=201)
def create_toy_image(
    toy_id: uuid.UUID,
    payload: ToyImageCreate,
    request: Request,
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _require_admin_session_or_403(db, request, x_session_token)
    toy = _load_toy_or_404(db, toy_id)
    image = add_toy_image(db, toy, payload.image_url, payload.is_primary)
    _commit_or_500(db, "add toy image")
    return serialize_image(image)


@app.delete("/api/toys/images/{image_id}")
def delete_toy_image(
    image_id: uuid.UUID,
    request: Request,
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _require_admin_session_or_403(db, request, x_session_token)
    _delete_or_404(db, ToyImage, image_id, "toy image")
    return {"message": "Toy image deleted"}


# Rentals

@app.get("/api/rentals")
def list_rentals(
    request: Request,
    page: int = Query(1),
    limit: int = Query(SETTINGS.default_page_limit),
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    session = _require_session_or_401(db, request, x_session_token)
    page, limit, offset = _page_params(page, limit)
    owner = None if session.get("role") == UserRole.ADMIN.value else session.get("sub")
    rentals, total = _rental_service(db).list_rentals(limit, offset, user_id=owner)
    return _paginated([serialize_rental(rental) for rental in rentals], total, page, limit)


@app.get("/api/rentals/{rental_id}")
def get_rental(
    rental_id: uuid.UUID,
    request: Request,
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    session = _require_session_or_401(db, request, x_session_token)
    try:
        rental = _rental_service(db).get_rental(rental_id)
    except RentalError as exc:
        raise _http_error(exc) from exc
    if session.get("role") != UserRole.ADMIN.value and str(rental.user_id) != session.get("sub"):
        raise HTTPException(status_code=404, detail="Rental not found")
    return serialize_rental(rental)


@app.post("/api/rentals", status_code=201)
def create_rental(
    payload: CreateRentalDto,
    request: Request,
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    session = _require_session_or_401(db, request, x_session_token)
    try:
        rental = _rental_service(db).create_rental(
            session.get("sub"),
            payload.rental_date,
            payload.expected_return_date,
            payload.items,
            payload.notes,
        )
    except RentalError as exc:
        raise _http_error(exc) from exc
    return serialize_rental(rental)


@app.put("/api/rentals/{rental_id}/return")
def return_rental(
    rental_id: uuid.UUID,
    payload: ReturnRentalDto,
    request: Request,
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _require_admin_session_or_403(db, request, x_session_token)
    try:
        rental = _rental_service(db).return_rental(
            rental_id,
            payload.actual_return_date,
            payload.items,
            payload.notes,
        )
    except RentalError as exc:
        raise _http_error(exc) from exc
    return serialize_rental(rental)


@app.post("/api/rentals/{rental_id}/cancel")
def cancel_rental(
    rental_id: uuid.UUID,
    request: Request,
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    session = _require_session_or_401(db, request, x_session_token)
    service = _rental_service(db)
    try:
        rental = service.get_rental(rental_id)
        if session.get("role") != UserRole.ADMIN.value and str(rental.user_id) != session.get("sub"):
            raise RentalNotFound(rental_id)
        rental = service.cancel_rental(rental_id)
    except RentalError as exc:
        raise _http_error(exc) from exc
    return serialize_rental(rental)


@app.delete("/api/rentals/{rental_id}")
def delete_rental(
    rental_id: uuid.UUID,
    request: Request,
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _require_admin_session_or_403(db, request, x_session_token)
    try:
        _rental_service(db).delete_rental(rental_id)
    except RentalError as exc:
        raise _http_error(exc) from exc
    return {"message": "Rental deleted"}
