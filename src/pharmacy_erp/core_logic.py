"""Business logic layer for the pharmacy ERP.

This module contains the rules that govern the point-of-sale ledger: building
a cart against the catalog, committing it as one sale header plus its line
items and stock decrements, and the owner-scoped read helpers the reporting
layer builds on. All I/O goes through the Data Access Layer (DAL).

Every operation takes the acting account explicitly; nothing reads an ambient
"current user".
"""

from __future__ import annotations

import threading
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import UTC, date, datetime
from decimal import Decimal
from functools import partial
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Tuple, TypeVar, Union

from openpyxl.workbook import Workbook

from . import data_manager, log
from .constants import EXPECTED_SCHEMA_VERSION, PaymentMethod, PaymentStatus
from .data_manager import PersistenceError, RollbackFailedError


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced medicine, customer, or sale is unknown."""


class UnknownMedicineError(MissingReferenceError):
    """Raised when a medicine id has no catalog record for the account."""


class InvalidQuantityError(BusinessRuleViolation, ValueError):
    """Raised when a requested quantity is not a positive whole number."""


class NotAuthenticatedError(BusinessRuleViolation):
    """Raised when no owning account is established for an operation."""


class EmptyCartError(BusinessRuleViolation):
    """Raised when committing a cart without entries."""


class InsufficientStockError(BusinessRuleViolation):
    """Raised when a cart would hold more units than the catalog has on hand."""

    def __init__(self, medicine_id: str, *, requested: int, available: int) -> None:
        super().__init__(
            f"Insufficient stock for medicine '{medicine_id}': "
            f"requested {requested}, available {available}"
        )
        self.medicine_id = medicine_id
        self.requested = requested
        self.available = available


class StockRaceLostError(BusinessRuleViolation):
    """Raised when stock ran out between cart build and commit.

    The failed commit has been fully compensated and the cart is untouched, so
    the caller may rebuild it from fresh catalog data and retry.
    """

    def __init__(self, medicine_id: str, *, requested: int, available: int) -> None:
        super().__init__(
            f"Stock for medicine '{medicine_id}' changed before commit: "
            f"requested {requested}, available {available}"
        )
        self.medicine_id = medicine_id
        self.requested = requested
        self.available = available


@dataclass(frozen=True)
class RetryPolicy:
    """How often idempotent reads are re-attempted after a store failure."""

    attempts: int = data_manager.DEFAULT_READ_RETRIES + 1
    backoff_seconds: float = data_manager.DEFAULT_RETRY_BACKOFF

    @classmethod
    def from_settings(cls, settings: data_manager.ConfigSettings) -> "RetryPolicy":
        return cls(attempts=settings.read_retries + 1, backoff_seconds=settings.retry_backoff)


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration and workbook references used by the BLL.

    The context owns the store lock. Every workbook access, read or write,
    happens while holding it, and commits hold it for their whole multi-record
    write so concurrent sessions sharing one context are serialized.
    """

    settings: data_manager.ConfigSettings
    workbook: Workbook
    _cache: Dict[str, Dict[str, Any]] = field(default_factory=dict, repr=False, compare=False)
    _lock: Any = field(default_factory=threading.RLock, repr=False, compare=False)

    @property
    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy.from_settings(self.settings)


@dataclass(frozen=True)
class CartEntry:
    """One medicine-and-quantity line awaiting commit.

    ``unit_price`` is the catalog price captured when the medicine was first
    added; later merges keep it.
    """

    medicine_id: str
    medicine_name: str
    quantity: int
    unit_price: Decimal

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity


@dataclass(frozen=True)
class CommittedSale:
    """A persisted sale header together with its frozen line items."""

    sale: data_manager.SaleRow
    items: Tuple[data_manager.SaleItemRow, ...]

    @property
    def invoice_number(self) -> str:
        return self.sale.invoice_number

    @property
    def total_amount(self) -> Decimal:
        return self.sale.total_amount


ResultT = TypeVar("ResultT")


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Return ``candidate`` as an aware datetime, defaulting to now in UTC.

    Naive values are interpreted as UTC so every stored sale date carries an
    offset.
    """

    if candidate is None:
        return datetime.now(UTC)
    if candidate.tzinfo is None:
        return candidate.replace(tzinfo=UTC)
    return candidate


@contextmanager
def store_lock(context: RuntimeContext) -> Iterator[None]:
    """Hold the context's store lock, waiting at most ``lock_timeout`` seconds.

    Raises:
        PersistenceError: If the lock cannot be acquired in time.
    """

    if not context._lock.acquire(timeout=context.settings.lock_timeout):
        log.error("Timed out after %.2fs waiting for the store lock", context.settings.lock_timeout)
        raise PersistenceError("Store is busy: timed out waiting for the write lock")
    try:
        yield
    finally:
        context._lock.release()


def with_read_retry(policy: RetryPolicy, func: Callable[..., ResultT], *args: Any, **kwargs: Any) -> ResultT:
    """Run an idempotent read, retrying on :class:`PersistenceError`.

    Business errors and DAL lookup signals propagate on the first attempt.
    The sleep between attempts grows linearly with the attempt number. Never
    use this for writes.
    """

    attempts = max(1, policy.attempts)
    for attempt in range(1, attempts + 1):
        try:
            return func(*args, **kwargs)
        except PersistenceError as exc:
            if attempt >= attempts:
                log.error("Read failed after %d attempt(s): %s", attempt, exc)
                raise
            log.warning("Read attempt %d/%d failed: %s; retrying", attempt, attempts, exc)
            time.sleep(policy.backoff_seconds * attempt)
    raise AssertionError("unreachable")


def _get_cache_bucket(context: RuntimeContext, name: str) -> Dict[str, Any]:
    """Return a mutable cache bucket dedicated to the supplied name."""

    bucket = context._cache.get(name)
    if bucket is None:
        log.debug("Initializing cache bucket '%s'", name)
        bucket = {}
        context._cache[name] = bucket
    return bucket


def _cache_name(table: data_manager.SheetTable[Any], account_id: str) -> str:
    return f"{table.sheet_name}:{account_id}"


def _invalidate_cache(context: RuntimeContext, account_id: str, *tables: data_manager.SheetTable[Any]) -> None:
    """Evict the account's buckets for ``tables`` after mutating workbook state."""

    if not tables:
        return

    names = [_cache_name(table, account_id) for table in tables]
    log.debug("Invalidating cache buckets: %s", ", ".join(names))
    for name in names:
        context._cache.pop(name, None)


def _read_owned_records(
    context: RuntimeContext,
    table: data_manager.SheetTable[Any],
    account_id: str,
) -> List[Any]:
    with store_lock(context):
        return data_manager.list_records(context.workbook, table, owner_id=account_id)


def _ensure_table_cache(
    context: RuntimeContext,
    table: data_manager.SheetTable[Any],
    account_id: str,
) -> Dict[str, Any]:
    """Populate the account's bucket for ``table`` on demand.

    The bucket stores the owned records in sheet order under ``all`` and a
    ``by_id`` lookup. Each read attempt holds the store lock only while it
    scans the sheet, so retry backoff never blocks a commit.
    """

    name = _cache_name(table, account_id)
    with store_lock(context):
        bucket = _get_cache_bucket(context, name)
        if "all" in bucket:
            return bucket

    records = with_read_retry(context.retry_policy, _read_owned_records, context, table, account_id)
    fresh = {"all": records, "by_id": {table.key_of(record): record for record in records}}

    with store_lock(context):
        # A write evicted the bucket while we were reading; do not cache stale rows.
        if context._cache.get(name) is not bucket:
            return fresh
        if "all" not in bucket:
            bucket.update(fresh)
            log.debug(
                "Populated %s cache for account '%s' with %d entries",
                table.sheet_name,
                account_id,
                len(records),
            )
        return bucket


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and a live workbook for the BLL.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer performs its upward search from
            the current working directory.

    Returns:
        RuntimeContext: Fully populated context ready for orchestration
            functions.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return RuntimeContext(settings=settings, workbook=workbook)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate workbook compatibility before mutating state.

    Raises:
        RuntimeError: If the schema version declared in the configuration does
            not match ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def persist_context(context: RuntimeContext) -> None:
    """Persist in-memory workbook changes to the configured data file."""
    with store_lock(context):
        data_manager.save_workbook(
            context.workbook,
            destination=context.settings.data_file,
        )
    log.info("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook to discard unsaved modifications.

    Returns:
        RuntimeContext: Fresh context with a newly opened workbook, an empty
            cache and its own lock.
    """
    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return RuntimeContext(settings=context.settings, workbook=workbook)


def require_account(account_id: Optional[str]) -> str:
    """Return ``account_id`` or raise :class:`NotAuthenticatedError`."""
    if account_id is None or not str(account_id).strip():
        log.warning("Operation attempted without an authenticated account")
        raise NotAuthenticatedError("No authenticated account is established")
    return str(account_id).strip()


def require_positive_quantity(quantity: object) -> int:
    """Validate that a requested quantity is a strictly positive integer.

    Raises:
        InvalidQuantityError: If ``quantity`` is not an ``int`` (``bool`` is
            rejected) or is zero or negative.
    """
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        log.error("Quantity validation failed: %r", quantity)
        raise InvalidQuantityError(f"Quantity must be a positive whole number, got {quantity!r}")
    return quantity


def require_nonnegative_money(amount: Decimal) -> None:
    """Validate that a monetary value is finite and nonnegative.

    Raises:
        ValueError: If ``amount`` is infinite, NaN or less than zero.
    """
    if not amount.is_finite():
        log.error("Monetary value validation failed: %s", amount)
        raise ValueError("Amount must be a finite number")
    if amount < Decimal("0"):
        log.error("Monetary value validation failed: %s", amount)
        raise ValueError("Amount must be zero or positive")


def generate_record_id(prefix: str) -> str:
    """Return a collision-resistant primary key such as ``MED-3f2a...``."""
    return f"{prefix}-{uuid.uuid4().hex}"


def _coerce_payment_method(value: Union[PaymentMethod, str]) -> PaymentMethod:
    if isinstance(value, PaymentMethod):
        return value
    try:
        return PaymentMethod(str(value).strip().lower())
    except ValueError as exc:
        log.error("Unsupported payment method provided: %s", value)
        raise BusinessRuleViolation(f"Unsupported payment method: {value}") from exc


# ---------------------------------------------------------------------------
# Owner-scoped reads
# ---------------------------------------------------------------------------


def list_medicines(context: RuntimeContext, account_id: str) -> List[data_manager.MedicineRow]:
    """Return the account's catalog in sheet order."""
    owner = require_account(account_id)
    return list(_ensure_table_cache(context, data_manager.MEDICINES, owner)["all"])


def list_customers(context: RuntimeContext, account_id: str) -> List[data_manager.CustomerRow]:
    """Return the account's customers in sheet order."""
    owner = require_account(account_id)
    return list(_ensure_table_cache(context, data_manager.CUSTOMERS, owner)["all"])


def list_sales(context: RuntimeContext, account_id: str) -> List[data_manager.SaleRow]:
    """Return the account's committed sale headers in commit order."""
    owner = require_account(account_id)
    return list(_ensure_table_cache(context, data_manager.SALES, owner)["all"])


def list_sale_items(
    context: RuntimeContext,
    account_id: str,
    *,
    sale_id: Optional[str] = None,
) -> List[data_manager.SaleItemRow]:
    """Return the account's persisted line items, optionally for one sale."""
    owner = require_account(account_id)
    items = _ensure_table_cache(context, data_manager.SALE_ITEMS, owner)["all"]
    if sale_id is None:
        return list(items)
    return [item for item in items if item.sale_id == sale_id]


def get_medicine(context: RuntimeContext, account_id: str, medicine_id: str) -> data_manager.MedicineRow:
    """Resolve a catalog record by id.

    Medicines owned by another account are reported exactly like absent ones.

    Raises:
        UnknownMedicineError: If the account has no medicine ``medicine_id``.
    """
    owner = require_account(account_id)
    cache = _ensure_table_cache(context, data_manager.MEDICINES, owner)
    try:
        return cache["by_id"][medicine_id]
    except KeyError as exc:
        log.warning("Medicine lookup failed for id '%s' (account '%s')", medicine_id, owner)
        raise UnknownMedicineError(f"Unknown medicine id: {medicine_id}") from exc


def get_customer(context: RuntimeContext, account_id: str, customer_id: str) -> data_manager.CustomerRow:
    """Resolve a customer record by id.

    Raises:
        MissingReferenceError: If the account has no customer ``customer_id``.
    """
    owner = require_account(account_id)
    cache = _ensure_table_cache(context, data_manager.CUSTOMERS, owner)
    try:
        return cache["by_id"][customer_id]
    except KeyError as exc:
        log.warning("Customer lookup failed for id '%s' (account '%s')", customer_id, owner)
        raise MissingReferenceError(f"Unknown customer id: {customer_id}") from exc


def get_sale_detail(context: RuntimeContext, account_id: str, sale_id: str) -> CommittedSale:
    """Return a committed sale with its line items.

    Raises:
        MissingReferenceError: If the account has no sale ``sale_id``.
    """
    owner = require_account(account_id)
    cache = _ensure_table_cache(context, data_manager.SALES, owner)
    try:
        sale = cache["by_id"][sale_id]
    except KeyError as exc:
        log.warning("Sale lookup failed for id '%s' (account '%s')", sale_id, owner)
        raise MissingReferenceError(f"Unknown sale id: {sale_id}") from exc
    return CommittedSale(sale=sale, items=tuple(list_sale_items(context, owner, sale_id=sale_id)))


# ---------------------------------------------------------------------------
# Catalog and customer seeding
# ---------------------------------------------------------------------------


def add_medicine(
    context: RuntimeContext,
    account_id: str,
    *,
    name: str,
    unit_price: Decimal,
    quantity_in_stock: int = 0,
    reorder_level: int = 10,
    generic_name: Optional[str] = None,
    manufacturer: Optional[str] = None,
    expiry_date: Optional[date] = None,
    batch_number: Optional[str] = None,
    medicine_id: Optional[str] = None,
) -> data_manager.MedicineRow:
    """Validate and append a medicine to the account's catalog.

    Raises:
        NotAuthenticatedError: If ``account_id`` is missing.
        ValueError: If the record violates the catalog constraints or the id
            is already taken.
    """
    owner = require_account(account_id)
    require_nonnegative_money(unit_price)
    record = data_manager.MedicineRow(
        medicine_id=medicine_id or generate_record_id("MED"),
        owner_id=owner,
        name=name,
        generic_name=generic_name,
        manufacturer=manufacturer,
        quantity_in_stock=quantity_in_stock,
        reorder_level=reorder_level,
        unit_price=unit_price,
        expiry_date=expiry_date,
        batch_number=batch_number,
    )
    with store_lock(context):
        data_manager.insert_record(context.workbook, data_manager.MEDICINES, record)
        _invalidate_cache(context, owner, data_manager.MEDICINES)
    log.info(
        "Added medicine '%s' (%s) for account '%s' (stock=%d, price=%s)",
        record.medicine_id,
        record.name,
        owner,
        record.quantity_in_stock,
        record.unit_price,
    )
    return record


def update_medicine(
    context: RuntimeContext,
    account_id: str,
    medicine_id: str,
    *,
    unit_price: Optional[Decimal] = None,
    quantity_in_stock: Optional[int] = None,
    reorder_level: Optional[int] = None,
    expiry_date: Optional[date] = None,
    batch_number: Optional[str] = None,
) -> data_manager.MedicineRow:
    """Edit catalog fields of an existing medicine; ``None`` leaves a field as is.

    Raises:
        NotAuthenticatedError: If ``account_id`` is missing.
        UnknownMedicineError: If the account has no medicine ``medicine_id``.
        ValueError: If the edited record violates the catalog constraints.
    """
    owner = require_account(account_id)
    if unit_price is not None:
        require_nonnegative_money(unit_price)
    field_values: Dict[str, Any] = {}
    if unit_price is not None:
        field_values["UnitPrice"] = unit_price
    if quantity_in_stock is not None:
        field_values["QuantityInStock"] = quantity_in_stock
    if reorder_level is not None:
        field_values["ReorderLevel"] = reorder_level
    if expiry_date is not None:
        field_values["ExpiryDate"] = expiry_date.isoformat()
    if batch_number is not None:
        field_values["BatchNumber"] = batch_number
    if not field_values:
        return get_medicine(context, owner, medicine_id)

    with store_lock(context):
        try:
            updated = data_manager.update_record(
                context.workbook,
                data_manager.MEDICINES,
                medicine_id,
                owner_id=owner,
                field_values=field_values,
            )
        except (data_manager.RecordNotFoundError, data_manager.RecordForbiddenError) as exc:
            log.warning("Cannot edit unknown medicine '%s' (account '%s')", medicine_id, owner)
            raise UnknownMedicineError(f"Unknown medicine id: {medicine_id}") from exc
        _invalidate_cache(context, owner, data_manager.MEDICINES)
    log.info("Updated medicine '%s' for account '%s': %s", medicine_id, owner, ", ".join(field_values))
    return updated


def restock_medicine(
    context: RuntimeContext,
    account_id: str,
    medicine_id: str,
    quantity: int,
) -> data_manager.MedicineRow:
    """Add ``quantity`` received units to a medicine's stock.

    The read and the write happen under one store lock so a concurrent sale
    cannot be overwritten.
    """
    owner = require_account(account_id)
    received = require_positive_quantity(quantity)
    with store_lock(context):
        try:
            current = data_manager.get_record(
                context.workbook,
                data_manager.MEDICINES,
                medicine_id,
                owner_id=owner,
            )
        except (data_manager.RecordNotFoundError, data_manager.RecordForbiddenError) as exc:
            log.warning("Cannot restock unknown medicine '%s' (account '%s')", medicine_id, owner)
            raise UnknownMedicineError(f"Unknown medicine id: {medicine_id}") from exc
        return update_medicine(
            context,
            owner,
            medicine_id,
            quantity_in_stock=current.quantity_in_stock + received,
        )


def add_customer(
    context: RuntimeContext,
    account_id: str,
    *,
    name: str,
    phone: Optional[str] = None,
    email: Optional[str] = None,
    address: Optional[str] = None,
    customer_id: Optional[str] = None,
) -> data_manager.CustomerRow:
    """Validate and append a customer record for the account."""
    owner = require_account(account_id)
    record = data_manager.CustomerRow(
        customer_id=customer_id or generate_record_id("CUS"),
        owner_id=owner,
        name=name,
        phone=phone,
        email=email,
        address=address,
    )
    with store_lock(context):
        data_manager.insert_record(context.workbook, data_manager.CUSTOMERS, record)
        _invalidate_cache(context, owner, data_manager.CUSTOMERS)
    log.info("Added customer '%s' for account '%s'", record.customer_id, owner)
    return record


# ---------------------------------------------------------------------------
# Cart builder
# ---------------------------------------------------------------------------


class Cart:
    """Single-owner, in-memory basket of line items awaiting commit.

    Entries are keyed by medicine id, so adding a medicine twice merges into
    one entry. Stock is checked against the catalog when an item is added; no
    reservation is held, and the committer re-checks at commit time.
    """

    def __init__(self, context: RuntimeContext, account_id: Optional[str]) -> None:
        self._context = context
        self._account_id = require_account(account_id)
        self._entries: Dict[str, CartEntry] = {}

    @property
    def account_id(self) -> str:
        return self._account_id

    def add(self, medicine_id: str, quantity: int) -> CartEntry:
        """Add ``quantity`` units of a medicine, merging with an existing entry.

        Raises:
            InvalidQuantityError: If ``quantity`` is not a positive integer.
            UnknownMedicineError: If the catalog has no such medicine.
            InsufficientStockError: If the cumulative quantity would exceed
                the medicine's current stock.
        """
        require_positive_quantity(quantity)
        medicine = get_medicine(self._context, self._account_id, medicine_id)

        existing = self._entries.get(medicine_id)
        requested = quantity + (existing.quantity if existing is not None else 0)
        if requested > medicine.quantity_in_stock:
            log.warning(
                "Rejected cart add for '%s': requested %d, in stock %d",
                medicine_id,
                requested,
                medicine.quantity_in_stock,
            )
            raise InsufficientStockError(
                medicine_id,
                requested=requested,
                available=medicine.quantity_in_stock,
            )

        if existing is None:
            entry = CartEntry(
                medicine_id=medicine.medicine_id,
                medicine_name=medicine.name,
                quantity=quantity,
                unit_price=medicine.unit_price,
            )
        else:
            entry = replace(existing, quantity=requested)
        self._entries[medicine_id] = entry
        log.debug("Cart entry '%s' now holds %d unit(s)", medicine_id, entry.quantity)
        return entry

    def remove(self, medicine_id: str) -> None:
        """Drop the entry for ``medicine_id``; absent ids are ignored."""
        self._entries.pop(medicine_id, None)

    def clear(self) -> None:
        self._entries.clear()

    def total(self) -> Decimal:
        """Return the exact sum of all line totals."""
        return sum((entry.line_total for entry in self._entries.values()), Decimal("0"))

    def items(self) -> Tuple[CartEntry, ...]:
        """Return a read-only snapshot of the entries in insertion order."""
        return tuple(self._entries.values())

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, medicine_id: object) -> bool:
        return medicine_id in self._entries


# ---------------------------------------------------------------------------
# Sale committer
# ---------------------------------------------------------------------------


class _CommitJournal:
    """Undo log for one commit attempt.

    Each applied write registers its inverse; :meth:`rollback` replays them
    newest-first and keeps going after an individual failure so as much state
    as possible is restored.
    """

    def __init__(self, workbook: Workbook, account_id: str) -> None:
        self._workbook = workbook
        self._account_id = account_id
        self._undo: List[Tuple[str, Callable[[], object]]] = []

    def __len__(self) -> int:
        return len(self._undo)

    def inserted(self, table: data_manager.SheetTable[Any], record_id: str) -> None:
        self._undo.append(
            (
                f"delete {table.sheet_name} {record_id}",
                partial(
                    data_manager.delete_record,
                    self._workbook,
                    table,
                    record_id,
                    owner_id=self._account_id,
                ),
            )
        )

    def updated(self, table: data_manager.SheetTable[Any], record_id: str, previous: Mapping[str, Any]) -> None:
        self._undo.append(
            (
                f"restore {table.sheet_name} {record_id}",
                partial(
                    data_manager.update_record,
                    self._workbook,
                    table,
                    record_id,
                    owner_id=self._account_id,
                    field_values=dict(previous),
                ),
            )
        )

    def rollback(self) -> List[str]:
        """Undo every journaled write and return the steps that failed."""
        failures: List[str] = []
        for description, undo in reversed(self._undo):
            try:
                undo()
            except Exception as exc:  # keep compensating the remaining writes
                log.critical("Compensation step failed (%s): %s", description, exc)
                failures.append(description)
        self._undo.clear()
        return failures


def next_invoice_sequence(sales: List[data_manager.SaleRow]) -> int:
    """Return one past the highest sequence suffix among ``sales`` invoices."""
    highest = 0
    for sale in sales:
        suffix = sale.invoice_number.rsplit("-", 1)[-1]
        if suffix.isdigit():
            highest = max(highest, int(suffix))
    return highest + 1


def generate_invoice_number(context: RuntimeContext, account_id: str, *, when: datetime) -> str:
    """Build the next invoice number for ``account_id``.

    The format is ``INV-{YYYYMMDDHHMMSSffffff}-{sequence:04d}``. The sequence
    is strictly increasing per account, so two invoices of the same account
    never collide even when generated in the same microsecond. Callers must
    hold the store lock.
    """
    existing = data_manager.list_records(context.workbook, data_manager.SALES, owner_id=account_id)
    sequence = next_invoice_sequence(existing)
    return f"INV-{when.astimezone(UTC).strftime('%Y%m%d%H%M%S%f')}-{sequence:04d}"


def _decrement_stock(
    context: RuntimeContext,
    journal: _CommitJournal,
    account_id: str,
    entry: CartEntry,
) -> None:
    """Decrement one medicine if the *current* stock still covers ``entry``."""
    try:
        current = data_manager.get_record(
            context.workbook,
            data_manager.MEDICINES,
            entry.medicine_id,
            owner_id=account_id,
        )
    except (data_manager.RecordNotFoundError, data_manager.RecordForbiddenError) as exc:
        log.warning("Medicine '%s' disappeared before commit", entry.medicine_id)
        raise StockRaceLostError(entry.medicine_id, requested=entry.quantity, available=0) from exc

    if current.quantity_in_stock < entry.quantity:
        log.warning(
            "Stock race lost for '%s': requested %d, now in stock %d",
            entry.medicine_id,
            entry.quantity,
            current.quantity_in_stock,
        )
        raise StockRaceLostError(
            entry.medicine_id,
            requested=entry.quantity,
            available=current.quantity_in_stock,
        )

    data_manager.update_record(
        context.workbook,
        data_manager.MEDICINES,
        entry.medicine_id,
        owner_id=account_id,
        field_values={"QuantityInStock": current.quantity_in_stock - entry.quantity},
    )
    journal.updated(
        data_manager.MEDICINES,
        entry.medicine_id,
        {"QuantityInStock": current.quantity_in_stock},
    )


def _apply_sale(
    context: RuntimeContext,
    journal: _CommitJournal,
    account_id: str,
    entries: Tuple[CartEntry, ...],
    payment_method: PaymentMethod,
    customer_id: Optional[str],
    when: datetime,
) -> CommittedSale:
    """Write header, line items and decrements, journaling each write."""
    sale = data_manager.SaleRow(
        sale_id=generate_record_id("SAL"),
        owner_id=account_id,
        invoice_number=generate_invoice_number(context, account_id, when=when),
        sale_date=when,
        customer_id=customer_id,
        total_amount=sum((entry.line_total for entry in entries), Decimal("0")),
        payment_method=payment_method.value,
        payment_status=PaymentStatus.COMPLETED.value,
    )
    data_manager.insert_record(context.workbook, data_manager.SALES, sale)
    journal.inserted(data_manager.SALES, sale.sale_id)

    items: List[data_manager.SaleItemRow] = []
    for entry in entries:
        item = data_manager.SaleItemRow(
            sale_item_id=generate_record_id("SLI"),
            owner_id=account_id,
            sale_id=sale.sale_id,
            medicine_id=entry.medicine_id,
            quantity=entry.quantity,
            unit_price=entry.unit_price,
            line_total=entry.line_total,
        )
        data_manager.insert_record(context.workbook, data_manager.SALE_ITEMS, item)
        journal.inserted(data_manager.SALE_ITEMS, item.sale_item_id)
        items.append(item)

    for entry in entries:
        _decrement_stock(context, journal, account_id, entry)

    return CommittedSale(sale=sale, items=tuple(items))


def commit_sale(
    context: RuntimeContext,
    cart: Cart,
    payment_method: Union[PaymentMethod, str],
    *,
    account_id: Optional[str],
    customer_id: Optional[str] = None,
    timestamp: Optional[datetime] = None,
) -> CommittedSale:
    """Persist ``cart`` as one sale, its line items, and the stock decrements.

    The header, line items and decrements are applied while holding the store
    lock, and every applied write is journaled. If any step fails the journal
    is replayed in reverse before the error propagates, so the catalog and the
    sale ledger are exactly as they were before the call. On success the cart
    is cleared; on failure it is left untouched.

    Args:
        context (RuntimeContext): Runtime context providing workbook access.
        cart (Cart): Cart built for ``account_id``.
        payment_method (PaymentMethod | str): Tender used for the sale.
        account_id (str | None): Acting account; ``None`` means
            unauthenticated.
        customer_id (str | None): Optional customer the sale is attributed to.
        timestamp (datetime | None): Sale date; defaults to now (UTC).

    Returns:
        CommittedSale: The persisted header and line items.

    Raises:
        NotAuthenticatedError: If no account is established or the cart was
            built for a different one.
        EmptyCartError: If the cart has no entries.
        MissingReferenceError: If ``customer_id`` is unknown.
        BusinessRuleViolation: If the payment method is unsupported.
        StockRaceLostError: If current stock no longer covers an entry.
        PersistenceError: If the store failed; the commit was rolled back.
        RollbackFailedError: If the rollback itself could not complete.
    """
    owner = require_account(account_id)
    if cart.account_id != owner:
        log.error("Account '%s' attempted to commit a cart built for '%s'", owner, cart.account_id)
        raise NotAuthenticatedError("Cart was built for a different account")

    entries = cart.items()
    if not entries:
        log.warning("Rejected commit of an empty cart for account '%s'", owner)
        raise EmptyCartError("Cannot commit a sale without items")

    method = _coerce_payment_method(payment_method)
    if customer_id is not None:
        get_customer(context, owner, customer_id)
    when = _resolve_timestamp(timestamp)

    with store_lock(context):
        journal = _CommitJournal(context.workbook, owner)
        try:
            committed = _apply_sale(context, journal, owner, entries, method, customer_id, when)
        except Exception as exc:
            applied = len(journal)
            failures = journal.rollback()
            _invalidate_cache(
                context,
                owner,
                data_manager.SALES,
                data_manager.SALE_ITEMS,
                data_manager.MEDICINES,
            )
            if failures:
                raise RollbackFailedError(
                    f"Sale commit failed ({exc}) and {len(failures)} compensation step(s) "
                    f"did not complete: {', '.join(failures)}"
                ) from exc
            log.warning("Sale commit rolled back %d write(s) for account '%s': %s", applied, owner, exc)
            if isinstance(exc, (BusinessRuleViolation, PersistenceError)):
                raise
            raise PersistenceError(f"Sale commit failed: {exc}") from exc

        _invalidate_cache(
            context,
            owner,
            data_manager.SALES,
            data_manager.SALE_ITEMS,
            data_manager.MEDICINES,
        )

    cart.clear()
    log.info(
        "Committed sale '%s' (%s) for account '%s': %d item(s), total=%s, payment=%s",
        committed.sale.sale_id,
        committed.invoice_number,
        owner,
        len(committed.items),
        committed.total_amount,
        method.value,
    )
    return committed
