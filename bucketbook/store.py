from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, List, Mapping, Optional, Tuple

from sqlalchemy import (
    BigInteger,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    func,
    insert,
    or_,
    select,
    update,
)
from sqlalchemy.engine import Connection, Engine, RowMapping

from bucketbook.balance_engine import (
    BUCKET_ORDER,
    Bucket,
    TransactionRecord,
    TransactionType,
    TransferRecord,
)
from bucketbook.income_split import INCOME_CATEGORY_NAME, plan_income_split
from bucketbook.preferences import (
    CurrencyInfo,
    UserPreferences,
    dump_hidden_currencies,
    parse_hidden_currencies,
)

logger = logging.getLogger(__name__)

metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), unique=True, nullable=False),
    Column("name", String(255)),
    Column("hashed_password", String(255), nullable=False),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

user_preferences = Table(
    "user_preferences",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), unique=True, nullable=False),
    Column("base_currency", String(3), nullable=False),
    Column("hidden_currencies", Text),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Column("updated_at", DateTime, nullable=False, server_default=func.now()),
)

categories = Table(
    "categories",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("bucket", String(20), nullable=False),
    Column("name", String(100), nullable=False),
    Column("type", String(10), nullable=False),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    UniqueConstraint(
        "user_id", "bucket", "name", "type", name="uq_categories_user_bucket_name_type"
    ),
)

transactions = Table(
    "transactions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("category_id", Integer, ForeignKey("categories.id"), nullable=False),
    Column("bucket", String(20), nullable=False),
    Column("type", String(10), nullable=False),
    Column("amount_minor", BigInteger, nullable=False),
    Column("currency", String(3), nullable=False),
    Column("effective_at", DateTime, nullable=False),
    Column("note", String(500)),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Column("updated_at", DateTime, nullable=False, server_default=func.now()),
)

transfers = Table(
    "transfers",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("bucket", String(20), nullable=False),
    Column("from_currency", String(3), nullable=False),
    Column("to_currency", String(3), nullable=False),
    Column("from_amount_minor", BigInteger, nullable=False),
    Column("to_amount_minor", BigInteger, nullable=False),
    Column("manual_rate", Numeric(18, 8), nullable=False),
    Column("effective_at", DateTime, nullable=False),
    Column("note", String(500)),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

currencies = Table(
    "currencies",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("code", String(3), nullable=False),
    Column("name", String(100), nullable=False),
    Column("symbol", String(10), nullable=False),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    UniqueConstraint("user_id", "code", name="uq_currencies_user_code"),
)

TRANSACTION_COLUMNS = (
    transactions.c.id,
    transactions.c.user_id,
    transactions.c.category_id,
    transactions.c.bucket,
    transactions.c.type,
    transactions.c.amount_minor,
    transactions.c.currency,
    transactions.c.effective_at,
    transactions.c.note,
    transactions.c.created_at,
    transactions.c.updated_at,
)

TRANSFER_COLUMNS = (
    transfers.c.id,
    transfers.c.user_id,
    transfers.c.bucket,
    transfers.c.from_currency,
    transfers.c.to_currency,
    transfers.c.from_amount_minor,
    transfers.c.to_amount_minor,
    transfers.c.manual_rate,
    transfers.c.effective_at,
    transfers.c.note,
    transfers.c.created_at,
)

CATEGORY_COLUMNS = (
    categories.c.id,
    categories.c.user_id,
    categories.c.bucket,
    categories.c.name,
    categories.c.type,
    categories.c.created_at,
)

PREFERENCE_COLUMNS = (
    user_preferences.c.user_id,
    user_preferences.c.base_currency,
    user_preferences.c.hidden_currencies,
    user_preferences.c.created_at,
    user_preferences.c.updated_at,
)


class RecordNotFound(LookupError):
    """Raised when a referenced record does not exist for the user."""


class RecordInUse(RuntimeError):
    """Raised when a record cannot be removed because other records use it."""


def build_engine(database_url: str, **kwargs: Any) -> Engine:
    connect_args = kwargs.pop("connect_args", {})
    if database_url.startswith("sqlite"):
        connect_args.setdefault("check_same_thread", False)
    return create_engine(database_url, connect_args=connect_args, **kwargs)


class LedgerStore:
    """Persistence for users, their ledger records and their preferences.

    Every query is scoped to a user id. Each public method runs in its own
    database transaction.
    """

    def __init__(self, engine: Engine, default_currency: str = "USD") -> None:
        self.engine = engine
        self.default_currency = default_currency

    def init_schema(self) -> None:
        metadata.create_all(self.engine)

    # Users

    def create_user(self, email: str, hashed_password: str, name: str | None = None) -> RowMapping:
        with self.engine.begin() as conn:
            row = conn.execute(
                insert(users)
                .values(email=email, hashed_password=hashed_password, name=name)
                .returning(users.c.id, users.c.email, users.c.name, users.c.created_at)
            ).mappings().one()
            conn.execute(
                insert(user_preferences).values(
                    user_id=row["id"], base_currency=self.default_currency
                )
            )
        return row

    def get_user(self, user_id: int) -> Optional[RowMapping]:
        with self.engine.begin() as conn:
            return conn.execute(select(users).where(users.c.id == user_id)).mappings().first()

    def get_user_by_email(self, email: str) -> Optional[RowMapping]:
        with self.engine.begin() as conn:
            return conn.execute(select(users).where(users.c.email == email)).mappings().first()

    def update_password(self, user_id: int, hashed_password: str) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(
                update(users).where(users.c.id == user_id).values(hashed_password=hashed_password)
            )
        return result.rowcount > 0

    # Preferences

    def get_preferences(self, user_id: int) -> UserPreferences:
        with self.engine.begin() as conn:
            row = conn.execute(
                select(*PREFERENCE_COLUMNS).where(user_preferences.c.user_id == user_id)
            ).mappings().first()
        if not row:
            return UserPreferences(user_id=user_id, base_currency=self.default_currency)
        return _preferences_from_row(row)

    def ensure_preferences(self, user_id: int) -> RowMapping:
        with self.engine.begin() as conn:
            return self._ensure_preferences(conn, user_id)

    def set_base_currency(self, user_id: int, base_currency: str) -> RowMapping:
        with self.engine.begin() as conn:
            self._ensure_preferences(conn, user_id)
            return conn.execute(
                update(user_preferences)
                .where(user_preferences.c.user_id == user_id)
                .values(base_currency=base_currency, updated_at=func.now())
                .returning(*PREFERENCE_COLUMNS)
            ).mappings().one()

    def hide_currency(self, user_id: int, code: str) -> UserPreferences:
        with self.engine.begin() as conn:
            row = self._ensure_preferences(conn, user_id)
            hidden = set(parse_hidden_currencies(row["hidden_currencies"]))
            hidden.add(code)
            row = conn.execute(
                update(user_preferences)
                .where(user_preferences.c.user_id == user_id)
                .values(hidden_currencies=dump_hidden_currencies(hidden), updated_at=func.now())
                .returning(*PREFERENCE_COLUMNS)
            ).mappings().one()
        return _preferences_from_row(row)

    def _ensure_preferences(self, conn: Connection, user_id: int) -> RowMapping:
        row = conn.execute(
            select(*PREFERENCE_COLUMNS).where(user_preferences.c.user_id == user_id)
        ).mappings().first()
        if row:
            return row
        return conn.execute(
            insert(user_preferences)
            .values(user_id=user_id, base_currency=self.default_currency)
            .returning(*PREFERENCE_COLUMNS)
        ).mappings().one()

    # Currencies

    def list_custom_currencies(self, user_id: int) -> List[CurrencyInfo]:
        with self.engine.begin() as conn:
            rows = conn.execute(
                select(currencies.c.code, currencies.c.name, currencies.c.symbol)
                .where(currencies.c.user_id == user_id)
                .order_by(currencies.c.code.asc())
            ).mappings().all()
        return [CurrencyInfo(code=row["code"], name=row["name"], symbol=row["symbol"]) for row in rows]

    def create_currency(self, user_id: int, code: str, name: str, symbol: str) -> CurrencyInfo:
        with self.engine.begin() as conn:
            row = conn.execute(
                insert(currencies)
                .values(user_id=user_id, code=code, name=name, symbol=symbol)
                .returning(currencies.c.code, currencies.c.name, currencies.c.symbol)
            ).mappings().one()
        return CurrencyInfo(code=row["code"], name=row["name"], symbol=row["symbol"])

    def delete_currency(self, user_id: int, code: str) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(
                currencies.delete().where(currencies.c.user_id == user_id, currencies.c.code == code)
            )
        return result.rowcount > 0

    def currency_usage(self, user_id: int, code: str) -> Tuple[int, int]:
        """Count transactions and transfers that reference a currency code."""
        with self.engine.begin() as conn:
            transaction_count = conn.execute(
                select(func.count())
                .select_from(transactions)
                .where(transactions.c.user_id == user_id, transactions.c.currency == code)
            ).scalar_one()
            transfer_count = conn.execute(
                select(func.count())
                .select_from(transfers)
                .where(
                    transfers.c.user_id == user_id,
                    or_(transfers.c.from_currency == code, transfers.c.to_currency == code),
                )
            ).scalar_one()
        return int(transaction_count), int(transfer_count)

    # Categories

    def list_categories(self, user_id: int, bucket: Bucket | None = None) -> List[RowMapping]:
        conditions = [categories.c.user_id == user_id]
        if bucket is not None:
            conditions.append(categories.c.bucket == bucket.value)
        with self.engine.begin() as conn:
            return conn.execute(
                select(*CATEGORY_COLUMNS)
                .where(*conditions)
                .order_by(categories.c.bucket.asc(), categories.c.name.asc(), categories.c.id.asc())
            ).mappings().all()

    def get_category(self, user_id: int, category_id: int) -> Optional[RowMapping]:
        with self.engine.begin() as conn:
            return self._get_category(conn, user_id, category_id)

    def create_category(
        self, user_id: int, name: str, bucket: Bucket, category_type: TransactionType
    ) -> RowMapping:
        with self.engine.begin() as conn:
            return conn.execute(
                insert(categories)
                .values(user_id=user_id, name=name, bucket=bucket.value, type=category_type.value)
                .returning(*CATEGORY_COLUMNS)
            ).mappings().one()

    def update_category(
        self,
        user_id: int,
        category_id: int,
        name: str | None = None,
        bucket: Bucket | None = None,
    ) -> Optional[RowMapping]:
        values: dict[str, Any] = {}
        if name is not None:
            values["name"] = name
        if bucket is not None:
            values["bucket"] = bucket.value
        with self.engine.begin() as conn:
            if not values:
                return self._get_category(conn, user_id, category_id)
            return conn.execute(
                update(categories)
                .where(categories.c.id == category_id, categories.c.user_id == user_id)
                .values(**values)
                .returning(*CATEGORY_COLUMNS)
            ).mappings().first()

    def delete_category(self, user_id: int, category_id: int) -> bool:
        with self.engine.begin() as conn:
            if not self._get_category(conn, user_id, category_id):
                return False
            in_use = conn.execute(
                select(func.count())
                .select_from(transactions)
                .where(transactions.c.category_id == category_id)
            ).scalar_one()
            if in_use:
                raise RecordInUse(
                    f"This category has {in_use} transaction(s). "
                    "Please delete or reassign them first."
                )
            conn.execute(
                categories.delete().where(
                    categories.c.id == category_id, categories.c.user_id == user_id
                )
            )
        return True

    def _get_category(self, conn: Connection, user_id: int, category_id: int) -> Optional[RowMapping]:
        return conn.execute(
            select(*CATEGORY_COLUMNS).where(
                categories.c.id == category_id, categories.c.user_id == user_id
            )
        ).mappings().first()

    def _income_category_id(self, conn: Connection, user_id: int, bucket: Bucket) -> int:
        existing = conn.execute(
            select(categories.c.id)
            .where(
                categories.c.user_id == user_id,
                categories.c.bucket == bucket.value,
                categories.c.type == TransactionType.INCOME.value,
            )
            .order_by(categories.c.id.asc())
            .limit(1)
        ).scalar_one_or_none()
        if existing is not None:
            return existing
        created = conn.execute(
            insert(categories)
            .values(
                user_id=user_id,
                name=INCOME_CATEGORY_NAME,
                bucket=bucket.value,
                type=TransactionType.INCOME.value,
            )
            .returning(categories.c.id)
        ).scalar_one()
        logger.info("Created %s income category %s for user %s", bucket.value, created, user_id)
        return created

    # Transactions

    def list_transactions(
        self,
        user_id: int,
        bucket: Bucket | None = None,
        category_id: int | None = None,
        currency: str | None = None,
        transaction_type: TransactionType | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> List[RowMapping]:
        conditions = [transactions.c.user_id == user_id]
        if bucket is not None:
            conditions.append(transactions.c.bucket == bucket.value)
        if category_id is not None:
            conditions.append(transactions.c.category_id == category_id)
        if currency is not None:
            conditions.append(transactions.c.currency == currency)
        if transaction_type is not None:
            conditions.append(transactions.c.type == transaction_type.value)
        if start is not None:
            conditions.append(transactions.c.effective_at >= start)
        if end is not None:
            conditions.append(transactions.c.effective_at <= end)
        with self.engine.begin() as conn:
            return conn.execute(
                select(*TRANSACTION_COLUMNS)
                .where(*conditions)
                .order_by(transactions.c.effective_at.desc(), transactions.c.id.desc())
            ).mappings().all()

    def create_transaction(self, user_id: int, values: Mapping[str, Any]) -> RowMapping:
        with self.engine.begin() as conn:
            if not self._get_category(conn, user_id, values["category_id"]):
                raise RecordNotFound("Category not found.")
            return conn.execute(
                insert(transactions)
                .values(user_id=user_id, **_transaction_values(values))
                .returning(*TRANSACTION_COLUMNS)
            ).mappings().one()

    def update_transaction(
        self, user_id: int, transaction_id: int, changes: Mapping[str, Any]
    ) -> Optional[RowMapping]:
        with self.engine.begin() as conn:
            category_id = changes.get("category_id")
            if category_id is not None and not self._get_category(conn, user_id, category_id):
                raise RecordNotFound("Category not found.")
            return conn.execute(
                update(transactions)
                .where(transactions.c.id == transaction_id, transactions.c.user_id == user_id)
                .values(updated_at=func.now(), **_transaction_values(changes))
                .returning(*TRANSACTION_COLUMNS)
            ).mappings().first()

    def delete_transaction(self, user_id: int, transaction_id: int) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(
                transactions.delete().where(
                    transactions.c.id == transaction_id, transactions.c.user_id == user_id
                )
            )
        return result.rowcount > 0

    def create_income_split(
        self,
        user_id: int,
        amount_minor: int,
        currency: str,
        effective_at: datetime,
        note: str | None = None,
    ) -> List[RowMapping]:
        """Insert the three split transactions, creating missing income categories.

        Category creation and all inserts share one database transaction.
        """
        with self.engine.begin() as conn:
            category_ids = {
                bucket: self._income_category_id(conn, user_id, bucket) for bucket in BUCKET_ORDER
            }
            planned = plan_income_split(
                amount_minor, currency, effective_at, category_ids, note=note
            )
            return [
                conn.execute(
                    insert(transactions)
                    .values(
                        user_id=user_id,
                        category_id=entry.category_id,
                        bucket=entry.bucket.value,
                        type=entry.type.value,
                        amount_minor=entry.amount_minor,
                        currency=entry.currency,
                        effective_at=entry.effective_at,
                        note=entry.note,
                    )
                    .returning(*TRANSACTION_COLUMNS)
                ).mappings().one()
                for entry in planned
            ]

    # Transfers

    def list_transfers(self, user_id: int, bucket: Bucket | None = None) -> List[RowMapping]:
        conditions = [transfers.c.user_id == user_id]
        if bucket is not None:
            conditions.append(transfers.c.bucket == bucket.value)
        with self.engine.begin() as conn:
            return conn.execute(
                select(*TRANSFER_COLUMNS)
                .where(*conditions)
                .order_by(transfers.c.effective_at.desc(), transfers.c.id.desc())
            ).mappings().all()

    def create_transfer(self, user_id: int, values: Mapping[str, Any]) -> RowMapping:
        with self.engine.begin() as conn:
            return conn.execute(
                insert(transfers)
                .values(
                    user_id=user_id,
                    bucket=values["bucket"].value,
                    from_currency=values["from_currency"],
                    to_currency=values["to_currency"],
                    from_amount_minor=values["from_amount_minor"],
                    to_amount_minor=values["to_amount_minor"],
                    manual_rate=values["manual_rate"],
                    effective_at=values["effective_at"],
                    note=values.get("note"),
                )
                .returning(*TRANSFER_COLUMNS)
            ).mappings().one()

    def delete_transfer(self, user_id: int, transfer_id: int) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(
                transfers.delete().where(transfers.c.id == transfer_id, transfers.c.user_id == user_id)
            )
        return result.rowcount > 0

    # Balance inputs

    def load_transaction_records(self, user_id: int) -> List[TransactionRecord]:
        with self.engine.begin() as conn:
            rows = conn.execute(
                select(
                    transactions.c.bucket,
                    transactions.c.type,
                    transactions.c.amount_minor,
                    transactions.c.currency,
                ).where(transactions.c.user_id == user_id)
            ).mappings().all()
        return [
            TransactionRecord(
                bucket=Bucket(row["bucket"]),
                type=TransactionType(row["type"]),
                amount_minor=int(row["amount_minor"]),
                currency=row["currency"],
            )
            for row in rows
        ]

    def load_transfer_records(self, user_id: int) -> List[TransferRecord]:
        with self.engine.begin() as conn:
            rows = conn.execute(
                select(*TRANSFER_COLUMNS).where(transfers.c.user_id == user_id)
            ).mappings().all()
        return [transfer_record_from_row(row) for row in rows]


def transfer_record_from_row(row: Mapping[str, Any]) -> TransferRecord:
    return TransferRecord(
        id=row["id"],
        bucket=Bucket(row["bucket"]),
        from_currency=row["from_currency"],
        to_currency=row["to_currency"],
        from_amount_minor=int(row["from_amount_minor"]),
        to_amount_minor=int(row["to_amount_minor"]),
        manual_rate=row["manual_rate"],
        effective_at=row["effective_at"],
    )


def _transaction_values(values: Mapping[str, Any]) -> dict[str, Any]:
    converted: dict[str, Any] = {}
    for key, value in values.items():
        if isinstance(value, (Bucket, TransactionType)):
            value = value.value
        converted[key] = value
    return converted


def _preferences_from_row(row: Mapping[str, Any]) -> UserPreferences:
    return UserPreferences(
        user_id=row["user_id"],
        base_currency=row["base_currency"],
        hidden_currencies=parse_hidden_currencies(row["hidden_currencies"]),
    )
