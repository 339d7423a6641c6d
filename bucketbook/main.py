import logging
from contextlib import asynccontextmanager
from datetime import date, datetime, time, timezone
from decimal import Decimal

import bcrypt
from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from bucketbook.balance_engine import Bucket, TransactionType, bucket_balances, overall_balances
from bucketbook.currency_conversion import compute_converted_total
from bucketbook.money import format_minor, normalize_currency
from bucketbook.preferences import (
    DEFAULT_CURRENCY_CODES,
    parse_hidden_currencies,
    visible_currencies,
)
from bucketbook.settings import Settings
from bucketbook.store import LedgerStore, RecordInUse, RecordNotFound, build_engine

logger = logging.getLogger(__name__)

MAX_NAME_LENGTH = 100
MAX_NOTE_LENGTH = 500
MAX_SYMBOL_LENGTH = 10
MIN_PASSWORD_LENGTH = 8

router = APIRouter()


class RegisterPayload(BaseModel):
    email: str
    password: str
    name: str | None = None

    @classmethod
    def validate_payload(cls, payload: "RegisterPayload") -> "RegisterPayload":
        payload.email = normalize_email(payload.email)
        validate_password(payload.password)
        payload.name = payload.name.strip() if payload.name else None
        return payload


class CredentialsPayload(BaseModel):
    email: str
    password: str


class ChangePasswordPayload(BaseModel):
    current_password: str
    new_password: str


class UserResponse(BaseModel):
    id: int
    email: str
    name: str | None = None
    created_at: datetime | None = None


class PreferencesPayload(BaseModel):
    base_currency: str


class PreferencesResponse(BaseModel):
    base_currency: str
    hidden_currencies: list[str]
    created_at: datetime | None = None
    updated_at: datetime | None = None


class CurrencyPayload(BaseModel):
    code: str
    name: str
    symbol: str

    @classmethod
    def validate_payload(cls, payload: "CurrencyPayload") -> "CurrencyPayload":
        payload.code = normalize_currency(payload.code)
        payload.name = payload.name.strip()
        payload.symbol = payload.symbol.strip()
        if not payload.name:
            raise ValueError("Currency name required.")
        if len(payload.name) > MAX_NAME_LENGTH:
            raise ValueError(f"Currency name must be at most {MAX_NAME_LENGTH} characters.")
        if not payload.symbol:
            raise ValueError("Currency symbol required.")
        if len(payload.symbol) > MAX_SYMBOL_LENGTH:
            raise ValueError(f"Currency symbol must be at most {MAX_SYMBOL_LENGTH} characters.")
        return payload


class CurrencyResponse(BaseModel):
    code: str
    name: str
    symbol: str
    is_default: bool = False


class CategoryPayload(BaseModel):
    name: str
    bucket: str
    type: str

    @classmethod
    def validate_payload(cls, payload: "CategoryPayload") -> "CategoryPayload":
        payload.name = validate_name(payload.name, "Category")
        payload.bucket = Bucket.validate(payload.bucket).value
        payload.type = TransactionType.validate(payload.type).value
        return payload


class CategoryUpdatePayload(BaseModel):
    name: str | None = None
    bucket: str | None = None

    @classmethod
    def validate_payload(cls, payload: "CategoryUpdatePayload") -> "CategoryUpdatePayload":
        if payload.name is not None:
            payload.name = validate_name(payload.name, "Category")
        if payload.bucket is not None:
            payload.bucket = Bucket.validate(payload.bucket).value
        return payload


class CategoryResponse(BaseModel):
    id: int
    user_id: int
    bucket: str
    name: str
    type: str
    created_at: datetime | None = None


class TransactionPayload(BaseModel):
    category_id: int
    bucket: str
    type: str
    amount_minor: int
    currency_code: str
    effective_at: datetime | None = None
    note: str | None = None

    @classmethod
    def validate_payload(cls, payload: "TransactionPayload") -> "TransactionPayload":
        payload.bucket = Bucket.validate(payload.bucket).value
        payload.type = TransactionType.validate(payload.type).value
        payload.amount_minor = validate_amount(payload.amount_minor)
        payload.currency_code = normalize_currency(payload.currency_code)
        payload.note = validate_note(payload.note)
        return payload


class TransactionUpdatePayload(BaseModel):
    category_id: int | None = None
    bucket: str | None = None
    type: str | None = None
    amount_minor: int | None = None
    currency_code: str | None = None
    effective_at: datetime | None = None
    note: str | None = None

    @classmethod
    def validate_payload(cls, payload: "TransactionUpdatePayload") -> "TransactionUpdatePayload":
        if payload.bucket is not None:
            payload.bucket = Bucket.validate(payload.bucket).value
        if payload.type is not None:
            payload.type = TransactionType.validate(payload.type).value
        if payload.amount_minor is not None:
            payload.amount_minor = validate_amount(payload.amount_minor)
        if payload.currency_code is not None:
            payload.currency_code = normalize_currency(payload.currency_code)
        payload.note = validate_note(payload.note)
        return payload


class TransactionResponse(BaseModel):
    id: int
    user_id: int
    category_id: int
    bucket: str
    type: str
    amount_minor: int
    currency_code: str
    effective_at: datetime
    note: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class TransferPayload(BaseModel):
    bucket: str
    from_currency: str
    to_currency: str
    from_amount_minor: int
    to_amount_minor: int
    manual_rate: Decimal
    effective_at: datetime | None = None
    note: str | None = None

    @classmethod
    def validate_payload(cls, payload: "TransferPayload") -> "TransferPayload":
        payload.bucket = Bucket.validate(payload.bucket).value
        payload.from_currency = normalize_currency(payload.from_currency)
        payload.to_currency = normalize_currency(payload.to_currency)
        if payload.from_currency == payload.to_currency:
            raise ValueError("From currency and to currency must be different.")
        payload.from_amount_minor = validate_amount(payload.from_amount_minor)
        payload.to_amount_minor = validate_amount(payload.to_amount_minor)
        if payload.manual_rate <= 0:
            raise ValueError("Exchange rate must be greater than zero.")
        payload.note = validate_note(payload.note)
        return payload


class TransferResponse(BaseModel):
    id: int
    user_id: int
    bucket: str
    from_currency: str
    to_currency: str
    from_amount_minor: int
    to_amount_minor: int
    manual_rate: Decimal
    effective_at: datetime
    note: str | None = None
    created_at: datetime | None = None


class BucketBalanceEntry(BaseModel):
    currency_code: str
    balance_minor: int


class BucketBalances(BaseModel):
    bucket: str
    balances: list[BucketBalanceEntry]


class BucketBalancesResponse(BaseModel):
    balances: list[BucketBalances]


class OverallBalanceEntry(BaseModel):
    currency_code: str
    total_minor: int


class OverallBalancesResponse(BaseModel):
    balances: list[OverallBalanceEntry]


class ConvertedTotalResponse(BaseModel):
    base_currency: str
    total_minor: int
    unconverted_currencies: list[str]


class IncomeSplitPayload(BaseModel):
    amount_minor: int
    currency_code: str
    effective_at: datetime | None = None
    note: str | None = None

    @classmethod
    def validate_payload(cls, payload: "IncomeSplitPayload") -> "IncomeSplitPayload":
        payload.amount_minor = validate_amount(payload.amount_minor)
        payload.currency_code = normalize_currency(payload.currency_code)
        payload.note = validate_note(payload.note)
        return payload


class IncomeSplitResponse(BaseModel):
    transactions: list[TransactionResponse]


def normalize_email(value: str) -> str:
    normalized = value.strip().lower()
    local, _, domain = normalized.partition("@")
    if not local or "." not in domain:
        raise ValueError("Invalid email address.")
    return normalized


def validate_password(password: str) -> str:
    if len(password) < MIN_PASSWORD_LENGTH:
        raise ValueError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long.")
    return password


def validate_name(value: str, label: str) -> str:
    normalized = value.strip()
    if not normalized:
        raise ValueError(f"{label} name required.")
    if len(normalized) > MAX_NAME_LENGTH:
        raise ValueError(f"{label} name must be at most {MAX_NAME_LENGTH} characters.")
    return normalized


def validate_amount(value: int) -> int:
    if value <= 0:
        raise ValueError("Amount must be greater than zero.")
    return value


def validate_note(value: str | None) -> str | None:
    if value is None:
        return None
    normalized = value.strip()
    if len(normalized) > MAX_NOTE_LENGTH:
        raise ValueError(f"Note must be at most {MAX_NOTE_LENGTH} characters.")
    return normalized or None


def to_naive_utc(value: datetime | None) -> datetime:
    if value is None:
        return datetime.now(timezone.utc).replace(tzinfo=None)
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, hashed_password: str) -> bool:
    return bcrypt.checkpw(password.encode("utf-8"), hashed_password.encode("utf-8"))


def get_store(request: Request) -> LedgerStore:
    return request.app.state.store


def get_user_id(
    x_user_id: str | None = Header(None, alias="x-user-id"),
    store: LedgerStore = Depends(get_store),
) -> int:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing user identity.")
    try:
        user_id = int(x_user_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid user identity.") from exc
    if store.get_user(user_id) is None:
        raise HTTPException(status_code=401, detail="Unknown user identity.")
    return user_id


def parse_bucket_filter(value: str | None) -> Bucket | None:
    if not value:
        return None
    try:
        return Bucket.validate(value)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def user_response(row) -> UserResponse:
    return UserResponse(
        id=row["id"],
        email=row["email"],
        name=row["name"],
        created_at=row["created_at"],
    )


def preferences_response(row) -> PreferencesResponse:
    return PreferencesResponse(
        base_currency=row["base_currency"],
        hidden_currencies=sorted(parse_hidden_currencies(row["hidden_currencies"])),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def category_response(row) -> CategoryResponse:
    return CategoryResponse(
        id=row["id"],
        user_id=row["user_id"],
        bucket=row["bucket"],
        name=row["name"],
        type=row["type"],
        created_at=row["created_at"],
    )


def transaction_response(row) -> TransactionResponse:
    return TransactionResponse(
        id=row["id"],
        user_id=row["user_id"],
        category_id=row["category_id"],
        bucket=row["bucket"],
        type=row["type"],
        amount_minor=row["amount_minor"],
        currency_code=row["currency"],
        effective_at=row["effective_at"],
        note=row["note"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def transfer_response(row) -> TransferResponse:
    return TransferResponse(
        id=row["id"],
        user_id=row["user_id"],
        bucket=row["bucket"],
        from_currency=row["from_currency"],
        to_currency=row["to_currency"],
        from_amount_minor=row["from_amount_minor"],
        to_amount_minor=row["to_amount_minor"],
        manual_rate=row["manual_rate"],
        effective_at=row["effective_at"],
        note=row["note"],
        created_at=row["created_at"],
    )


@router.get("/health")
def health() -> dict:
    return {"status": "ok"}


@router.post("/auth/register", response_model=UserResponse, status_code=201)
def register(payload: RegisterPayload, store: LedgerStore = Depends(get_store)) -> UserResponse:
    try:
        payload = RegisterPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    try:
        row = store.create_user(payload.email, hash_password(payload.password), payload.name)
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail="User with this email already exists.") from exc
    return user_response(row)


@router.post("/auth/login", response_model=UserResponse)
def login(payload: CredentialsPayload, store: LedgerStore = Depends(get_store)) -> UserResponse:
    row = store.get_user_by_email(payload.email.strip().lower())
    if not row or not verify_password(payload.password, row["hashed_password"]):
        raise HTTPException(status_code=401, detail="Invalid credentials.")
    return user_response(row)


@router.get("/auth/me", response_model=UserResponse)
def me(
    user_id: int = Depends(get_user_id), store: LedgerStore = Depends(get_store)
) -> UserResponse:
    row = store.get_user(user_id)
    if not row:
        raise HTTPException(status_code=404, detail="User not found.")
    return user_response(row)


@router.post("/auth/change-password")
def change_password(
    payload: ChangePasswordPayload,
    user_id: int = Depends(get_user_id),
    store: LedgerStore = Depends(get_store),
) -> dict:
    try:
        validate_password(payload.new_password)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    row = store.get_user(user_id)
    if not row or not verify_password(payload.current_password, row["hashed_password"]):
        raise HTTPException(status_code=401, detail="Current password is incorrect.")
    store.update_password(user_id, hash_password(payload.new_password))
    return {"status": "updated"}


@router.get("/preferences", response_model=PreferencesResponse)
def get_preferences(
    user_id: int = Depends(get_user_id), store: LedgerStore = Depends(get_store)
) -> PreferencesResponse:
    return preferences_response(store.ensure_preferences(user_id))


@router.put("/preferences", response_model=PreferencesResponse)
def update_preferences(
    payload: PreferencesPayload,
    user_id: int = Depends(get_user_id),
    store: LedgerStore = Depends(get_store),
) -> PreferencesResponse:
    try:
        base_currency = normalize_currency(payload.base_currency)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return preferences_response(store.set_base_currency(user_id, base_currency))


@router.get("/currencies", response_model=list[CurrencyResponse])
def list_currencies(
    user_id: int = Depends(get_user_id), store: LedgerStore = Depends(get_store)
) -> list[CurrencyResponse]:
    preferences = store.get_preferences(user_id)
    listed = visible_currencies(store.list_custom_currencies(user_id), preferences.hidden_currencies)
    return [
        CurrencyResponse(
            code=currency.code,
            name=currency.name,
            symbol=currency.symbol,
            is_default=currency.is_default,
        )
        for currency in listed
    ]


@router.post("/currencies", response_model=CurrencyResponse, status_code=201)
def create_currency(
    payload: CurrencyPayload,
    user_id: int = Depends(get_user_id),
    store: LedgerStore = Depends(get_store),
) -> CurrencyResponse:
    try:
        payload = CurrencyPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if payload.code in DEFAULT_CURRENCY_CODES:
        raise HTTPException(
            status_code=409, detail="Currency code already exists in default currencies."
        )
    try:
        currency = store.create_currency(user_id, payload.code, payload.name, payload.symbol)
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail="Currency already exists.") from exc
    return CurrencyResponse(code=currency.code, name=currency.name, symbol=currency.symbol)


@router.delete("/currencies/{code}")
def delete_currency(
    code: str,
    user_id: int = Depends(get_user_id),
    store: LedgerStore = Depends(get_store),
) -> dict:
    try:
        normalized = normalize_currency(code)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    transaction_count, transfer_count = store.currency_usage(user_id, normalized)
    if transaction_count or transfer_count:
        raise HTTPException(
            status_code=409,
            detail=(
                "Cannot delete currency that is used in transactions or transfers: "
                f"{transaction_count} transaction(s) and {transfer_count} transfer(s)."
            ),
        )

    if normalized in DEFAULT_CURRENCY_CODES:
        store.hide_currency(user_id, normalized)
        return {"status": "hidden"}
    if not store.delete_currency(user_id, normalized):
        raise HTTPException(status_code=404, detail="Currency not found.")
    return {"status": "deleted"}


@router.get("/categories", response_model=list[CategoryResponse])
def list_categories(
    bucket: str | None = None,
    user_id: int = Depends(get_user_id),
    store: LedgerStore = Depends(get_store),
) -> list[CategoryResponse]:
    rows = store.list_categories(user_id, bucket=parse_bucket_filter(bucket))
    return [category_response(row) for row in rows]


@router.post("/categories", response_model=CategoryResponse, status_code=201)
def create_category(
    payload: CategoryPayload,
    user_id: int = Depends(get_user_id),
    store: LedgerStore = Depends(get_store),
) -> CategoryResponse:
    try:
        payload = CategoryPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    try:
        row = store.create_category(
            user_id, payload.name, Bucket(payload.bucket), TransactionType(payload.type)
        )
    except IntegrityError as exc:
        raise HTTPException(
            status_code=409, detail="Category with this name already exists in this bucket."
        ) from exc
    return category_response(row)


@router.put("/categories/{category_id}", response_model=CategoryResponse)
def update_category(
    category_id: int,
    payload: CategoryUpdatePayload,
    user_id: int = Depends(get_user_id),
    store: LedgerStore = Depends(get_store),
) -> CategoryResponse:
    try:
        payload = CategoryUpdatePayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    try:
        row = store.update_category(
            user_id,
            category_id,
            name=payload.name,
            bucket=Bucket(payload.bucket) if payload.bucket else None,
        )
    except IntegrityError as exc:
        raise HTTPException(
            status_code=409, detail="Category with this name already exists in this bucket."
        ) from exc
    if not row:
        raise HTTPException(status_code=404, detail="Category not found.")
    return category_response(row)


@router.delete("/categories/{category_id}")
def delete_category(
    category_id: int,
    user_id: int = Depends(get_user_id),
    store: LedgerStore = Depends(get_store),
) -> dict:
    try:
        deleted = store.delete_category(user_id, category_id)
    except RecordInUse as exc:
        raise HTTPException(
            status_code=409,
            detail=f"Cannot delete category with existing transactions. {exc}",
        ) from exc
    if not deleted:
        raise HTTPException(status_code=404, detail="Category not found.")
    return {"status": "deleted"}


@router.get("/transactions", response_model=list[TransactionResponse])
def list_transactions(
    bucket: str | None = None,
    category_id: int | None = None,
    currency_code: str | None = None,
    type: str | None = None,
    start_date: date | None = None,
    end_date: date | None = None,
    user_id: int = Depends(get_user_id),
    store: LedgerStore = Depends(get_store),
) -> list[TransactionResponse]:
    try:
        currency = normalize_currency(currency_code) if currency_code else None
        transaction_type = TransactionType.validate(type) if type else None
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if start_date and end_date and start_date > end_date:
        raise HTTPException(status_code=400, detail="Start date must be on or before end date.")

    rows = store.list_transactions(
        user_id,
        bucket=parse_bucket_filter(bucket),
        category_id=category_id,
        currency=currency,
        transaction_type=transaction_type,
        start=datetime.combine(start_date, time.min) if start_date else None,
        end=datetime.combine(end_date, time.max) if end_date else None,
    )
    return [transaction_response(row) for row in rows]


@router.post("/transactions", response_model=TransactionResponse, status_code=201)
def create_transaction(
    payload: TransactionPayload,
    user_id: int = Depends(get_user_id),
    store: LedgerStore = Depends(get_store),
) -> TransactionResponse:
    try:
        payload = TransactionPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    try:
        row = store.create_transaction(
            user_id,
            {
                "category_id": payload.category_id,
                "bucket": Bucket(payload.bucket),
                "type": TransactionType(payload.type),
                "amount_minor": payload.amount_minor,
                "currency": payload.currency_code,
                "effective_at": to_naive_utc(payload.effective_at),
                "note": payload.note,
            },
        )
    except RecordNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return transaction_response(row)


@router.put("/transactions/{transaction_id}", response_model=TransactionResponse)
def update_transaction(
    transaction_id: int,
    payload: TransactionUpdatePayload,
    user_id: int = Depends(get_user_id),
    store: LedgerStore = Depends(get_store),
) -> TransactionResponse:
    try:
        payload = TransactionUpdatePayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    provided = payload.model_fields_set
    changes: dict = {}
    if payload.category_id is not None:
        changes["category_id"] = payload.category_id
    if payload.bucket is not None:
        changes["bucket"] = Bucket(payload.bucket)
    if payload.type is not None:
        changes["type"] = TransactionType(payload.type)
    if payload.amount_minor is not None:
        changes["amount_minor"] = payload.amount_minor
    if payload.currency_code is not None:
        changes["currency"] = payload.currency_code
    if payload.effective_at is not None:
        changes["effective_at"] = to_naive_utc(payload.effective_at)
    if "note" in provided:
        changes["note"] = payload.note

    try:
        row = store.update_transaction(user_id, transaction_id, changes)
    except RecordNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    if not row:
        raise HTTPException(status_code=404, detail="Transaction not found.")
    return transaction_response(row)


@router.delete("/transactions/{transaction_id}")
def delete_transaction(
    transaction_id: int,
    user_id: int = Depends(get_user_id),
    store: LedgerStore = Depends(get_store),
) -> dict:
    if not store.delete_transaction(user_id, transaction_id):
        raise HTTPException(status_code=404, detail="Transaction not found.")
    return {"status": "deleted"}


@router.get("/transfers", response_model=list[TransferResponse])
def list_transfers(
    bucket: str | None = None,
    user_id: int = Depends(get_user_id),
    store: LedgerStore = Depends(get_store),
) -> list[TransferResponse]:
    rows = store.list_transfers(user_id, bucket=parse_bucket_filter(bucket))
    return [transfer_response(row) for row in rows]


@router.post("/transfers", response_model=TransferResponse, status_code=201)
def create_transfer(
    payload: TransferPayload,
    user_id: int = Depends(get_user_id),
    store: LedgerStore = Depends(get_store),
) -> TransferResponse:
    try:
        payload = TransferPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    row = store.create_transfer(
        user_id,
        {
            "bucket": Bucket(payload.bucket),
            "from_currency": payload.from_currency,
            "to_currency": payload.to_currency,
            "from_amount_minor": payload.from_amount_minor,
            "to_amount_minor": payload.to_amount_minor,
            "manual_rate": payload.manual_rate,
            "effective_at": to_naive_utc(payload.effective_at),
            "note": payload.note,
        },
    )
    return transfer_response(row)


@router.delete("/transfers/{transfer_id}")
def delete_transfer(
    transfer_id: int,
    user_id: int = Depends(get_user_id),
    store: LedgerStore = Depends(get_store),
) -> dict:
    if not store.delete_transfer(user_id, transfer_id):
        raise HTTPException(status_code=404, detail="Transfer not found.")
    return {"status": "deleted"}


@router.get("/balances/buckets", response_model=BucketBalancesResponse)
def get_bucket_balances(
    user_id: int = Depends(get_user_id), store: LedgerStore = Depends(get_store)
) -> BucketBalancesResponse:
    preferences = store.get_preferences(user_id)
    per_bucket = bucket_balances(
        store.load_transaction_records(user_id),
        store.load_transfer_records(user_id),
        preferences.hidden_currencies,
    )
    return BucketBalancesResponse(
        balances=[
            BucketBalances(
                bucket=bucket.value,
                balances=[
                    BucketBalanceEntry(currency_code=currency, balance_minor=amount)
                    for currency, amount in balances.items()
                ],
            )
            for bucket, balances in per_bucket.items()
        ]
    )


@router.get("/balances/overall", response_model=OverallBalancesResponse)
def get_overall_balances(
    user_id: int = Depends(get_user_id), store: LedgerStore = Depends(get_store)
) -> OverallBalancesResponse:
    preferences = store.get_preferences(user_id)
    balances = overall_balances(
        store.load_transaction_records(user_id),
        store.load_transfer_records(user_id),
        preferences.hidden_currencies,
    )
    return OverallBalancesResponse(
        balances=[
            OverallBalanceEntry(currency_code=currency, total_minor=amount)
            for currency, amount in balances.items()
        ]
    )


@router.get("/balances/converted", response_model=ConvertedTotalResponse)
def get_converted_total(
    user_id: int = Depends(get_user_id), store: LedgerStore = Depends(get_store)
) -> ConvertedTotalResponse:
    preferences = store.get_preferences(user_id)
    result = compute_converted_total(
        store.load_transaction_records(user_id),
        store.load_transfer_records(user_id),
        preferences.base_currency,
        preferences.hidden_currencies,
    )
    return ConvertedTotalResponse(
        base_currency=result.base_currency,
        total_minor=result.total_minor,
        unconverted_currencies=result.unconverted_currencies,
    )


@router.post("/income-split", response_model=IncomeSplitResponse, status_code=201)
def split_income(
    payload: IncomeSplitPayload,
    user_id: int = Depends(get_user_id),
    store: LedgerStore = Depends(get_store),
) -> IncomeSplitResponse:
    try:
        payload = IncomeSplitPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    try:
        rows = store.create_income_split(
            user_id,
            payload.amount_minor,
            payload.currency_code,
            to_naive_utc(payload.effective_at),
            note=payload.note,
        )
    except IntegrityError as exc:
        raise HTTPException(
            status_code=409, detail="Income split conflicted with a concurrent change; retry."
        ) from exc

    logger.info(
        "Split %s across %d buckets for user %s",
        format_minor(payload.amount_minor, payload.currency_code),
        len(rows),
        user_id,
    )
    return IncomeSplitResponse(transactions=[transaction_response(row) for row in rows])


def handle_database_error(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    logger.exception("Database error on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(status_code=500, content={"detail": "Internal server error."})


def create_app(settings: Settings | None = None, store: LedgerStore | None = None) -> FastAPI:
    settings = settings or Settings.from_env()
    logging.basicConfig(level=settings.log_level)
    if store is None:
        store = LedgerStore(
            build_engine(settings.database_url),
            default_currency=settings.default_currency,
        )

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        store.init_schema()
        yield

    application = FastAPI(title="bucketbook", lifespan=lifespan)
    application.state.store = store
    application.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.frontend_origin],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    application.add_exception_handler(SQLAlchemyError, handle_database_error)
    application.include_router(router)
    return application


app = create_app()
