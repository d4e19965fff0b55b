"""Data access layer for the pharmacy ERP.

This module provides low-level helpers that read from and write to the
master workbook. Business logic belongs elsewhere.

The public API is designed around four responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Identity: resolving the account the current session acts for.
3. Workbook lifecycle: opening, validating, and persisting the Excel file.
4. Table operations: owner-scoped ``get``/``list``/``insert``/``update``/
   ``delete`` on the ``Medicines``, ``Customers``, ``Sales`` and
   ``SaleItems`` worksheets.
"""


from __future__ import annotations

import configparser
import os
from dataclasses import dataclass
from datetime import UTC, date, datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Callable, Generic, Iterable, Mapping, Optional, Sequence, TypeVar
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from openpyxl.workbook import Workbook
from openpyxl.worksheet.worksheet import Worksheet
import openpyxl

from . import log
from .constants import ACCOUNT_ENV_VAR, PaymentMethod, SheetName


CONFIG_FILE_NAME = "config.ini"
OWNER_COLUMN = "OwnerID"

DEFAULT_TIMEZONE = "UTC"
DEFAULT_LOCK_TIMEOUT = 5.0
DEFAULT_READ_RETRIES = 2
DEFAULT_RETRY_BACKOFF = 0.05

# Column layout of every managed worksheet, in storage order.
SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    SheetName.MEDICINES.value: [
        "MedicineID",
        OWNER_COLUMN,
        "Name",
        "GenericName",
        "Manufacturer",
        "QuantityInStock",
        "ReorderLevel",
        "UnitPrice",
        "ExpiryDate",
        "BatchNumber",
    ],
    SheetName.CUSTOMERS.value: [
        "CustomerID",
        OWNER_COLUMN,
        "Name",
        "Phone",
        "Email",
        "Address",
    ],
    SheetName.SALES.value: [
        "SaleID",
        OWNER_COLUMN,
        "InvoiceNumber",
        "SaleDate",
        "CustomerID",
        "TotalAmount",
        "PaymentMethod",
        "PaymentStatus",
    ],
    SheetName.SALE_ITEMS.value: [
        "SaleItemID",
        OWNER_COLUMN,
        "SaleID",
        "MedicineID",
        "Quantity",
        "UnitPrice",
        "LineTotal",
    ],
}


class PersistenceError(Exception):
    """Raised when the backing store is unavailable or structurally broken."""


class RollbackFailedError(PersistenceError):
    """Raised when compensating a failed multi-record write did not complete."""


class RecordNotFoundError(KeyError):
    """Raised when no row carries the requested key."""


class RecordForbiddenError(LookupError):
    """Raised when a row exists but belongs to a different account."""


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    pharmacy_name: str
    schema_version: str
    timezone: str = DEFAULT_TIMEZONE
    account_id: Optional[str] = None
    lock_timeout: float = DEFAULT_LOCK_TIMEOUT
    read_retries: int = DEFAULT_READ_RETRIES
    retry_backoff: float = DEFAULT_RETRY_BACKOFF


def _require_non_negative_int(field_name: str, value: object) -> None:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{field_name} must be an integer, got {value!r}")
    if value < 0:
        raise ValueError(f"{field_name} must be zero or positive, got {value}")


def _require_non_negative_money(field_name: str, value: object) -> None:
    if not isinstance(value, Decimal):
        raise ValueError(f"{field_name} must be a Decimal, got {value!r}")
    if not value.is_finite():
        raise ValueError(f"{field_name} must be a finite amount, got {value}")
    if value < Decimal("0"):
        raise ValueError(f"{field_name} must be zero or positive, got {value}")


@dataclass(frozen=True)
class MedicineRow:
    """In-memory view of a row from the ``Medicines`` sheet."""

    medicine_id: str
    owner_id: str
    name: str
    generic_name: Optional[str]
    manufacturer: Optional[str]
    quantity_in_stock: int
    reorder_level: int
    unit_price: Decimal
    expiry_date: Optional[date]
    batch_number: Optional[str]

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("Medicine name must not be empty")
        _require_non_negative_int("quantity_in_stock", self.quantity_in_stock)
        _require_non_negative_int("reorder_level", self.reorder_level)
        _require_non_negative_money("unit_price", self.unit_price)


@dataclass(frozen=True)
class CustomerRow:
    """In-memory view of a row from the ``Customers`` sheet."""

    customer_id: str
    owner_id: str
    name: str
    phone: Optional[str] = None
    email: Optional[str] = None
    address: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("Customer name must not be empty")


@dataclass(frozen=True)
class SaleRow:
    """In-memory view of a committed sale header from the ``Sales`` sheet."""

    sale_id: str
    owner_id: str
    invoice_number: str
    sale_date: datetime
    customer_id: Optional[str]
    total_amount: Decimal
    payment_method: str
    payment_status: str

    def __post_init__(self) -> None:
        if not self.invoice_number:
            raise ValueError("Invoice number must not be empty")
        if not isinstance(self.sale_date, datetime):
            raise ValueError(f"sale_date must be a datetime, got {self.sale_date!r}")
        _require_non_negative_money("total_amount", self.total_amount)
        if self.payment_method not in {member.value for member in PaymentMethod}:
            raise ValueError(f"Unsupported payment method: {self.payment_method}")


@dataclass(frozen=True)
class SaleItemRow:
    """In-memory view of a committed line item from the ``SaleItems`` sheet."""

    sale_item_id: str
    owner_id: str
    sale_id: str
    medicine_id: str
    quantity: int
    unit_price: Decimal
    line_total: Decimal

    def __post_init__(self) -> None:
        _require_non_negative_int("quantity", self.quantity)
        if self.quantity == 0:
            raise ValueError("quantity must be greater than zero")
        _require_non_negative_money("unit_price", self.unit_price)
        if self.line_total != self.unit_price * self.quantity:
            raise ValueError(
                f"line_total {self.line_total} does not equal "
                f"{self.quantity} x {self.unit_price}"
            )


RecordT = TypeVar("RecordT")


@dataclass(frozen=True)
class SheetTable(Generic[RecordT]):
    """Bind a worksheet to the record type it stores.

    The descriptor carries everything the generic table helpers need: which
    sheet to touch, which header holds the primary key, how to read the key
    back off a record, and the codec pair translating between records and
    worksheet rows.
    """

    sheet_name: str
    key_column: str
    key_attribute: str
    serialize: Callable[[RecordT], list[object]]
    deserialize: Callable[[Sequence[object]], RecordT]

    def key_of(self, record: RecordT) -> str:
        return getattr(record, self.key_attribute)


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Return the path of ``config.ini`` for this pharmacy install.

    An ``explicit_path`` (for example from ``--config``) wins and is returned
    as given; a missing file then surfaces when it is read. Otherwise the
    working directory and each of its parents are checked in turn, so the CLI
    works from any folder inside the install.

    Raises:
        FileNotFoundError: If no ancestor directory holds ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute.

    Returns:
        configparser.ConfigParser: Initialized parser containing the raw
            configuration data.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    ``[System]`` entries ``DataFile``, ``PharmacyName`` and ``SchemaVersion``
    are mandatory. ``TimeZone``, ``[Session] AccountId`` and the
    ``[Persistence]`` tuning knobs fall back to module defaults. Relative
    ``DataFile`` paths are anchored at ``base_path`` (or the current working
    directory) and resolved.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory to use as the anchor for relative
            ``DataFile`` entries. Defaults to :func:`Path.cwd` when omitted.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If one of the required sections or options is missing from the
            configuration.
        ValueError: If ``TimeZone`` is unknown or a numeric option is malformed.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        pharmacy_name = parser.get("System", "PharmacyName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    timezone_name = parser.get("System", "TimeZone", fallback=DEFAULT_TIMEZONE).strip()
    try:
        ZoneInfo(timezone_name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"Unknown time zone in configuration: {timezone_name}") from exc

    account_id = parser.get("Session", "AccountId", fallback="").strip() or None

    lock_timeout = parser.getfloat("Persistence", "LockTimeoutSeconds", fallback=DEFAULT_LOCK_TIMEOUT)
    read_retries = parser.getint("Persistence", "ReadRetries", fallback=DEFAULT_READ_RETRIES)
    retry_backoff = parser.getfloat("Persistence", "RetryBackoffSeconds", fallback=DEFAULT_RETRY_BACKOFF)
    if lock_timeout <= 0 or read_retries < 0 or retry_backoff < 0:
        raise ValueError("Persistence settings must be positive")

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        pharmacy_name=pharmacy_name,
        schema_version=schema_version,
        timezone=timezone_name,
        account_id=account_id,
        lock_timeout=lock_timeout,
        read_retries=read_retries,
        retry_backoff=retry_backoff,
    )


def resolve_account_id(settings: ConfigSettings, environ: Optional[Mapping[str, str]] = None) -> Optional[str]:
    """Return the account the current session acts for, or ``None``.

    The ``PHARMACY_ACCOUNT_ID`` environment variable wins over the
    ``[Session] AccountId`` configuration entry. ``None`` is the
    unauthenticated signal; the business layer decides how to react to it.
    """

    env = os.environ if environ is None else environ
    candidate = (env.get(ACCOUNT_ENV_VAR) or settings.account_id or "").strip()
    return candidate or None


def open_workbook(data_file: Path) -> Workbook:
    """Open the master Excel workbook and return a live ``openpyxl`` workbook.

    Args:
        data_file (Path): Filesystem path to the master workbook.

    Returns:
        Workbook: ``openpyxl`` workbook instance backed by the provided file.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    wb = openpyxl.load_workbook(data_file)
    return wb


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to disk at an explicitly provided destination.

    Parent directories are created on demand.

    Args:
        workbook (Workbook): Workbook instance to persist.
        destination (Path): Filesystem path that should receive the serialized
            workbook.
    """

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding any unsaved in-memory changes."""

    return open_workbook(data_file)


def get_sheet(workbook: Workbook, sheet_name: str) -> Worksheet:
    """Return ``sheet_name`` or raise :class:`PersistenceError` if it is gone."""

    try:
        return workbook[sheet_name]
    except KeyError as exc:
        log.error("Workbook is missing sheet '%s'", sheet_name)
        raise PersistenceError(f"Workbook is missing sheet: {sheet_name}") from exc


def header_map(sheet: Worksheet) -> dict[str, int]:
    """Map header titles to their 1-based column indices."""

    return {cell.value: idx + 1 for idx, cell in enumerate(sheet[1]) if cell.value is not None}


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> Optional[int]:
    """Find a row by matching a key value within the specified worksheet.

    Args:
        workbook (Workbook): Workbook providing access to ``sheet_name``.
        sheet_name (str): Name of the worksheet to search.
        key_column (str): Header title identifying the column that stores the
            lookup key.
        key_value (str): Value to match within the key column.

    Returns:
        int | None: 1-based Excel row index when a match is found, otherwise
            ``None``.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    sheet = get_sheet(workbook, sheet_name)
    headers = header_map(sheet)
    if key_column not in headers:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = headers[key_column]

    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        if key_col_index > len(row):
            continue
        cell_value = row[key_col_index - 1]
        if cell_value is not None and str(cell_value) == key_value:
            return row_idx

    return None


def iter_records(workbook: Workbook, table: SheetTable[RecordT]) -> Iterable[RecordT]:
    """Stream every record stored in ``table`` regardless of owner.

    Header and fully empty rows are skipped. Rows that cannot be decoded into
    a valid record mean the store itself is damaged and surface as
    :class:`PersistenceError`.
    """

    sheet = get_sheet(workbook, table.sheet_name)
    for row_idx, raw in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        if not any(cell is not None for cell in raw):
            continue
        try:
            yield table.deserialize(raw)
        except (ValueError, TypeError, InvalidOperation) as exc:
            log.error("Malformed row %d in sheet '%s': %s", row_idx, table.sheet_name, exc)
            raise PersistenceError(
                f"Malformed row {row_idx} in sheet {table.sheet_name}: {exc}"
            ) from exc


def list_records(
    workbook: Workbook,
    table: SheetTable[RecordT],
    *,
    owner_id: str,
    predicate: Optional[Callable[[RecordT], bool]] = None,
) -> list[RecordT]:
    """Return the records of ``table`` owned by ``owner_id`` in sheet order.

    Args:
        workbook (Workbook): Workbook holding the table.
        table (SheetTable): Table descriptor.
        owner_id (str): Account whose rows should be returned.
        predicate (Callable | None): Optional extra filter applied after the
            owner check.

    Returns:
        list: Matching records; empty when the account owns none.
    """

    records = []
    for record in iter_records(workbook, table):
        if getattr(record, "owner_id") != owner_id:
            continue
        if predicate is not None and not predicate(record):
            continue
        records.append(record)
    return records


def _read_row(sheet: Worksheet, row_index: int) -> tuple[object, ...]:
    return next(sheet.iter_rows(min_row=row_index, max_row=row_index, values_only=True))


def _require_owned_row(workbook: Workbook, table: SheetTable[Any], record_id: str, owner_id: str) -> int:
    row_index = locate_row(workbook, table.sheet_name, table.key_column, record_id)
    if row_index is None:
        raise RecordNotFoundError(f"{table.sheet_name} record not found: {record_id}")

    sheet = get_sheet(workbook, table.sheet_name)
    owner_col = header_map(sheet)[OWNER_COLUMN]
    stored_owner = sheet.cell(row=row_index, column=owner_col).value
    if stored_owner is None or str(stored_owner) != owner_id:
        log.warning(
            "Account '%s' attempted to access %s record '%s' it does not own",
            owner_id,
            table.sheet_name,
            record_id,
        )
        raise RecordForbiddenError(f"{table.sheet_name} record {record_id} belongs to another account")
    return row_index


def get_record(workbook: Workbook, table: SheetTable[RecordT], record_id: str, *, owner_id: str) -> RecordT:
    """Fetch a single record by key, enforcing ownership.

    Raises:
        RecordNotFoundError: If no row carries ``record_id``.
        RecordForbiddenError: If the row belongs to a different account.
    """

    row_index = _require_owned_row(workbook, table, record_id, owner_id)
    sheet = get_sheet(workbook, table.sheet_name)
    return table.deserialize(_read_row(sheet, row_index))


def insert_record(workbook: Workbook, table: SheetTable[RecordT], record: RecordT) -> RecordT:
    """Append ``record`` to its worksheet.

    Raises:
        ValueError: If a row with the same key already exists.
    """

    key = table.key_of(record)
    if locate_row(workbook, table.sheet_name, table.key_column, key) is not None:
        raise ValueError(f"Duplicate {table.key_column}: {key}")
    sheet = get_sheet(workbook, table.sheet_name)
    sheet.append(table.serialize(record))
    return record


def update_record(
    workbook: Workbook,
    table: SheetTable[RecordT],
    record_id: str,
    *,
    owner_id: str,
    field_values: Mapping[str, Any],
) -> RecordT:
    """Update selected columns for an existing, owned record.

    The patched row is decoded into a record *before* any cell is written, so
    a patch that would violate the record's constraints (for example a
    negative ``QuantityInStock``) raises ``ValueError`` and leaves the sheet
    untouched. Key and owner columns are immutable.

    Args:
        workbook (Workbook): Workbook containing the table.
        table (SheetTable): Table descriptor.
        record_id (str): Identifier used to locate the target row.
        owner_id (str): Account that must own the row.
        field_values (Mapping[str, Any]): Mapping of column names to replacement
            values.

    Returns:
        The record as stored after the update.

    Raises:
        KeyError: If any referenced column cannot be found.
        RecordNotFoundError: If the row does not exist.
        RecordForbiddenError: If the row belongs to a different account.
        ValueError: If the patch touches the key or owner column or produces
            an invalid record.
    """

    row_index = _require_owned_row(workbook, table, record_id, owner_id)
    sheet = get_sheet(workbook, table.sheet_name)
    headers = header_map(sheet)

    row_values = list(_read_row(sheet, row_index))
    for field, value in field_values.items():
        if field not in headers:
            raise KeyError(f"Unknown {table.sheet_name} field: {field}")
        if field in (table.key_column, OWNER_COLUMN):
            raise ValueError(f"Column {field} cannot be updated")
        row_values[headers[field] - 1] = value

    updated = table.deserialize(row_values)
    for field, value in field_values.items():
        sheet.cell(row=row_index, column=headers[field], value=value)
    return updated


def delete_record(workbook: Workbook, table: SheetTable[Any], record_id: str, *, owner_id: str) -> None:
    """Remove an owned record's row from its worksheet.

    Raises:
        RecordNotFoundError: If the row does not exist.
        RecordForbiddenError: If the row belongs to a different account.
    """

    row_index = _require_owned_row(workbook, table, record_id, owner_id)
    get_sheet(workbook, table.sheet_name).delete_rows(row_index, 1)


# ---------------------------------------------------------------------------
# Cell coercion
# ---------------------------------------------------------------------------


def _pad(raw_row: Sequence[object], width: int) -> tuple[object, ...]:
    values = tuple(raw_row)[:width]
    return values + (None,) * (width - len(values))


def _to_optional_str(raw: object) -> Optional[str]:
    return str(raw) if raw is not None else None


def _to_decimal(raw: object, default: str = "0.00") -> Decimal:
    return Decimal(str(raw)) if raw is not None else Decimal(default)


def _to_int(raw: object) -> int:
    if raw is None:
        return 0
    value = Decimal(str(raw))
    if value != value.to_integral_value():
        raise ValueError(f"Expected a whole number, got {raw!r}")
    return int(value)


def _to_date(raw: object) -> Optional[date]:
    if raw is None or raw == "":
        return None
    if isinstance(raw, datetime):
        return raw.date()
    if isinstance(raw, date):
        return raw
    return date.fromisoformat(str(raw))


def _to_datetime(raw: object) -> datetime:
    if raw is None:
        raise ValueError("Missing timestamp")
    value = raw if isinstance(raw, datetime) else datetime.fromisoformat(str(raw))
    # Cells typed by hand carry no offset; stored sales are UTC.
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value


# ---------------------------------------------------------------------------
# Codecs
# ---------------------------------------------------------------------------


def serialize_medicine(record: MedicineRow) -> list[object]:
    """Convert a medicine dataclass into the ``Medicines`` column ordering."""

    return [
        record.medicine_id,
        record.owner_id,
        record.name,
        record.generic_name,
        record.manufacturer,
        record.quantity_in_stock,
        record.reorder_level,
        record.unit_price,
        record.expiry_date.isoformat() if record.expiry_date is not None else None,
        record.batch_number,
    ]


def deserialize_medicine(raw_row: Sequence[object]) -> MedicineRow:
    """Convert a raw worksheet row into a strongly typed medicine record.

    Identifiers and text fields are coerced to ``str`` to avoid surprises
    caused by Excel interpreting numbers, stock figures become ``int`` and
    prices :class:`~decimal.Decimal`. Expiry dates are accepted either as ISO
    text or as native Excel dates.
    """

    (
        medicine_id,
        owner_id,
        name,
        generic_name,
        manufacturer,
        quantity_raw,
        reorder_raw,
        price_raw,
        expiry_raw,
        batch_number,
    ) = _pad(raw_row, 10)

    return MedicineRow(
        medicine_id=str(medicine_id),
        owner_id=str(owner_id),
        name=str(name) if name is not None else "",
        generic_name=_to_optional_str(generic_name),
        manufacturer=_to_optional_str(manufacturer),
        quantity_in_stock=_to_int(quantity_raw),
        reorder_level=_to_int(reorder_raw),
        unit_price=_to_decimal(price_raw),
        expiry_date=_to_date(expiry_raw),
        batch_number=_to_optional_str(batch_number),
    )


def serialize_customer(record: CustomerRow) -> list[object]:
    """Convert a customer dataclass into the ``Customers`` column ordering."""

    return [record.customer_id, record.owner_id, record.name, record.phone, record.email, record.address]


def deserialize_customer(raw_row: Sequence[object]) -> CustomerRow:
    customer_id, owner_id, name, phone, email, address = _pad(raw_row, 6)
    return CustomerRow(
        customer_id=str(customer_id),
        owner_id=str(owner_id),
        name=str(name) if name is not None else "",
        phone=_to_optional_str(phone),
        email=_to_optional_str(email),
        address=_to_optional_str(address),
    )


def serialize_sale(record: SaleRow) -> list[object]:
    """Convert a sale header into the ``Sales`` column ordering.

    The timestamp is stored as ISO-8601 text because Excel cells cannot carry
    a UTC offset.
    """

    return [
        record.sale_id,
        record.owner_id,
        record.invoice_number,
        record.sale_date.isoformat(),
        record.customer_id,
        record.total_amount,
        record.payment_method,
        record.payment_status,
    ]


def deserialize_sale(raw_row: Sequence[object]) -> SaleRow:
    (
        sale_id,
        owner_id,
        invoice_number,
        sale_date_raw,
        customer_id,
        total_raw,
        payment_method,
        payment_status,
    ) = _pad(raw_row, 8)

    return SaleRow(
        sale_id=str(sale_id),
        owner_id=str(owner_id),
        invoice_number=str(invoice_number) if invoice_number is not None else "",
        sale_date=_to_datetime(sale_date_raw),
        customer_id=_to_optional_str(customer_id),
        total_amount=_to_decimal(total_raw),
        payment_method=str(payment_method) if payment_method is not None else "",
        payment_status=str(payment_status) if payment_status is not None else "",
    )


def serialize_sale_item(record: SaleItemRow) -> list[object]:
    """Convert a persisted line item into the ``SaleItems`` column ordering."""

    return [
        record.sale_item_id,
        record.owner_id,
        record.sale_id,
        record.medicine_id,
        record.quantity,
        record.unit_price,
        record.line_total,
    ]


def deserialize_sale_item(raw_row: Sequence[object]) -> SaleItemRow:
    sale_item_id, owner_id, sale_id, medicine_id, quantity_raw, price_raw, total_raw = _pad(raw_row, 7)
    return SaleItemRow(
        sale_item_id=str(sale_item_id),
        owner_id=str(owner_id),
        sale_id=str(sale_id),
        medicine_id=str(medicine_id),
        quantity=_to_int(quantity_raw),
        unit_price=_to_decimal(price_raw),
        line_total=_to_decimal(total_raw),
    )


MEDICINES: SheetTable[MedicineRow] = SheetTable(
    sheet_name=SheetName.MEDICINES.value,
    key_column="MedicineID",
    key_attribute="medicine_id",
    serialize=serialize_medicine,
    deserialize=deserialize_medicine,
)

CUSTOMERS: SheetTable[CustomerRow] = SheetTable(
    sheet_name=SheetName.CUSTOMERS.value,
    key_column="CustomerID",
    key_attribute="customer_id",
    serialize=serialize_customer,
    deserialize=deserialize_customer,
)

SALES: SheetTable[SaleRow] = SheetTable(
    sheet_name=SheetName.SALES.value,
    key_column="SaleID",
    key_attribute="sale_id",
    serialize=serialize_sale,
    deserialize=deserialize_sale,
)

SALE_ITEMS: SheetTable[SaleItemRow] = SheetTable(
    sheet_name=SheetName.SALE_ITEMS.value,
    key_column="SaleItemID",
    key_attribute="sale_item_id",
    serialize=serialize_sale_item,
    deserialize=deserialize_sale_item,
)
