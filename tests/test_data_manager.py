"""Unit tests documenting the expected behavior of the data access layer."""

from __future__ import annotations

import configparser
from dataclasses import replace
from datetime import UTC, date, datetime
from decimal import Decimal
from pathlib import Path

import pytest
from openpyxl.workbook import Workbook as OpenpyxlWorkbook

from pharmacy_erp import constants, data_manager
from pharmacy_erp.setup_excel import build_master_workbook

OWNER = "acct-001"
OTHER = "acct-002"


def _medicine(medicine_id: str = "MED-1", *, owner_id: str = OWNER, **overrides) -> data_manager.MedicineRow:
    values = {
        "medicine_id": medicine_id,
        "owner_id": owner_id,
        "name": "Paracetamol",
        "generic_name": "Acetaminophen",
        "manufacturer": "Acme",
        "quantity_in_stock": 12,
        "reorder_level": 5,
        "unit_price": Decimal("1.25"),
        "expiry_date": date(2027, 1, 31),
        "batch_number": "B-17",
    }
    values.update(overrides)
    return data_manager.MedicineRow(**values)


@pytest.fixture
def workbook() -> OpenpyxlWorkbook:
    return build_master_workbook()


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def test_find_config_file_respects_explicit_path(config_file: Path):
    """Supplying an explicit path should be treated as the winning answer."""

    result = data_manager.find_config_file(config_file)
    assert result == config_file


def test_find_config_file_discovers_in_parent_directory(tmp_path, monkeypatch):
    """Auto-discovery should walk up from the working directory."""

    config_file = tmp_path / "config.ini"
    config_file.write_text("[System]\nDataFile=master_workbook.xlsx")
    nested = tmp_path / "a" / "b"
    nested.mkdir(parents=True)
    monkeypatch.chdir(nested)

    assert data_manager.find_config_file() == config_file


def test_find_config_file_raises_when_missing(tmp_path, monkeypatch):
    """Absent configuration should surface a clear FileNotFoundError."""

    monkeypatch.chdir(tmp_path)
    with pytest.raises(FileNotFoundError):
        data_manager.find_config_file()


def test_read_config_loads_sections(config_file: Path):
    """read_config should return a populated ConfigParser."""

    parser = data_manager.read_config(config_file)
    assert parser.get("System", "PharmacyName") == "Test Pharmacy"
    assert parser.get("Session", "AccountId") == "acct-001"


def test_read_config_missing_file_raises(tmp_path):
    """Missing files should propagate a FileNotFoundError."""

    with pytest.raises(FileNotFoundError):
        data_manager.read_config(tmp_path / "not_there.ini")


def test_parse_settings_resolves_relative_paths(config_factory):
    """Relative DataFile entries should be anchored to the config location."""

    bundle = config_factory(make_relative=True)
    parser = data_manager.read_config(bundle.config_path)
    settings = data_manager.parse_settings(parser, base_path=bundle.config_path.parent)

    assert settings.data_file == (bundle.config_path.parent / bundle.workbook_path.name).resolve()
    assert settings.account_id == "acct-001"
    assert settings.timezone == "UTC"
    assert settings.lock_timeout == pytest.approx(2.0)
    assert settings.read_retries == 1


def test_parse_settings_applies_defaults_for_optional_sections(tmp_path):
    """Only the [System] essentials are mandatory."""

    parser = configparser.ConfigParser()
    parser.read_string(
        "[System]\nDataFile = data.xlsx\nPharmacyName = P\nSchemaVersion = 1.0.0\n"
    )
    settings = data_manager.parse_settings(parser, base_path=tmp_path)

    assert settings.timezone == data_manager.DEFAULT_TIMEZONE
    assert settings.account_id is None
    assert settings.lock_timeout == data_manager.DEFAULT_LOCK_TIMEOUT
    assert settings.read_retries == data_manager.DEFAULT_READ_RETRIES


def test_parse_settings_requires_expected_sections(tmp_path):
    """Missing keys should result in a descriptive KeyError."""

    parser = configparser.ConfigParser()
    parser.read_string("[Other]\nvalue=1")
    with pytest.raises(KeyError):
        data_manager.parse_settings(parser, base_path=tmp_path)


def test_parse_settings_rejects_unknown_timezone(tmp_path):
    """Report dates depend on the zone, so a typo must fail loudly."""

    parser = configparser.ConfigParser()
    parser.read_string(
        "[System]\nDataFile = data.xlsx\nPharmacyName = P\nSchemaVersion = 1.0.0\n"
        "TimeZone = Mars/Olympus_Mons\n"
    )
    with pytest.raises(ValueError):
        data_manager.parse_settings(parser, base_path=tmp_path)


def test_parse_settings_rejects_non_positive_lock_timeout(tmp_path):
    parser = configparser.ConfigParser()
    parser.read_string(
        "[System]\nDataFile = data.xlsx\nPharmacyName = P\nSchemaVersion = 1.0.0\n"
        "[Persistence]\nLockTimeoutSeconds = 0\n"
    )
    with pytest.raises(ValueError):
        data_manager.parse_settings(parser, base_path=tmp_path)


def test_resolve_account_id_prefers_environment(settings):
    """The environment override wins over config.ini."""

    env = {constants.ACCOUNT_ENV_VAR: " acct-env "}
    assert data_manager.resolve_account_id(settings, env) == "acct-env"
    assert data_manager.resolve_account_id(settings, {}) == settings.account_id


def test_resolve_account_id_returns_none_when_unauthenticated(settings):
    anonymous = replace(settings, account_id=None)
    assert data_manager.resolve_account_id(anonymous, {}) is None
    assert data_manager.resolve_account_id(anonymous, {constants.ACCOUNT_ENV_VAR: "  "}) is None


# ---------------------------------------------------------------------------
# Workbook I/O
# ---------------------------------------------------------------------------


def test_open_workbook_returns_openpyxl_instance(master_workbook_path):
    """open_workbook should hand back a loaded Workbook object."""

    workbook = data_manager.open_workbook(master_workbook_path)
    assert isinstance(workbook, OpenpyxlWorkbook)
    assert set(workbook.sheetnames) == set(data_manager.SHEET_COLUMNS)


def test_open_workbook_missing_file_raises(tmp_path):
    """Missing workbook files should yield FileNotFoundError."""

    with pytest.raises(FileNotFoundError):
        data_manager.open_workbook(tmp_path / "missing.xlsx")


def test_save_workbook_persists_records(master_workbook_path):
    """Records written through the DAL should survive a save and reload."""

    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.insert_record(workbook, data_manager.MEDICINES, _medicine())
    data_manager.save_workbook(workbook, master_workbook_path)

    reloaded = data_manager.refresh_workbook(master_workbook_path)
    record = data_manager.get_record(reloaded, data_manager.MEDICINES, "MED-1", owner_id=OWNER)

    assert record.quantity_in_stock == 12
    assert record.unit_price == Decimal("1.25")
    assert record.expiry_date == date(2027, 1, 31)


def test_sale_timestamp_keeps_offset_across_save(master_workbook_path):
    """Sale dates are stored as ISO text so the UTC offset is not lost."""

    workbook = data_manager.open_workbook(master_workbook_path)
    moment = datetime(2026, 3, 14, 9, 30, tzinfo=UTC)
    sale = data_manager.SaleRow(
        sale_id="SAL-1",
        owner_id=OWNER,
        invoice_number="INV-1-0001",
        sale_date=moment,
        customer_id=None,
        total_amount=Decimal("4.00"),
        payment_method=constants.PaymentMethod.CARD.value,
        payment_status=constants.PaymentStatus.COMPLETED.value,
    )
    data_manager.insert_record(workbook, data_manager.SALES, sale)
    data_manager.save_workbook(workbook, master_workbook_path)

    reloaded = data_manager.open_workbook(master_workbook_path)
    stored = data_manager.get_record(reloaded, data_manager.SALES, "SAL-1", owner_id=OWNER)

    assert stored.sale_date == moment
    assert stored.sale_date.utcoffset() is not None


@pytest.mark.parametrize(
    "cell_value",
    [datetime(2026, 3, 14, 23, 30), "2026-03-14T23:30:00"],
)
def test_naive_sale_timestamp_is_read_as_utc(workbook, cell_value):
    """Hand-entered dates without an offset decode as UTC, not host time."""

    sale = data_manager.SaleRow(
        sale_id="SAL-1",
        owner_id=OWNER,
        invoice_number="INV-1-0001",
        sale_date=datetime(2026, 1, 1, tzinfo=UTC),
        customer_id=None,
        total_amount=Decimal("4.00"),
        payment_method=constants.PaymentMethod.CASH.value,
        payment_status=constants.PaymentStatus.COMPLETED.value,
    )
    data_manager.insert_record(workbook, data_manager.SALES, sale)
    sheet = data_manager.get_sheet(workbook, data_manager.SALES.sheet_name)
    sheet.cell(row=2, column=data_manager.header_map(sheet)["SaleDate"], value=cell_value)

    stored = data_manager.get_record(workbook, data_manager.SALES, "SAL-1", owner_id=OWNER)

    assert stored.sale_date == datetime(2026, 3, 14, 23, 30, tzinfo=UTC)


def test_get_sheet_missing_sheet_raises_persistence_error(workbook):
    del workbook[constants.SheetName.CUSTOMERS.value]
    with pytest.raises(data_manager.PersistenceError):
        data_manager.get_sheet(workbook, constants.SheetName.CUSTOMERS.value)


# ---------------------------------------------------------------------------
# Owner-scoped table helpers
# ---------------------------------------------------------------------------


def test_locate_row_matches_key_column(workbook):
    data_manager.insert_record(workbook, data_manager.MEDICINES, _medicine("MED-1"))
    data_manager.insert_record(workbook, data_manager.MEDICINES, _medicine("MED-2"))

    assert data_manager.locate_row(workbook, "Medicines", "MedicineID", "MED-2") == 3
    assert data_manager.locate_row(workbook, "Medicines", "MedicineID", "MED-9") is None


def test_locate_row_unknown_column_raises(workbook):
    with pytest.raises(KeyError):
        data_manager.locate_row(workbook, "Medicines", "Nope", "MED-1")


def test_insert_record_rejects_duplicate_key(workbook):
    data_manager.insert_record(workbook, data_manager.MEDICINES, _medicine())
    with pytest.raises(ValueError):
        data_manager.insert_record(workbook, data_manager.MEDICINES, _medicine(name="Other"))


def test_list_records_is_owner_scoped(workbook):
    """Rows owned by another account are never returned."""

    data_manager.insert_record(workbook, data_manager.MEDICINES, _medicine("MED-1"))
    data_manager.insert_record(workbook, data_manager.MEDICINES, _medicine("MED-2", owner_id=OTHER))
    data_manager.insert_record(workbook, data_manager.MEDICINES, _medicine("MED-3", quantity_in_stock=0))

    mine = data_manager.list_records(workbook, data_manager.MEDICINES, owner_id=OWNER)
    in_stock = data_manager.list_records(
        workbook,
        data_manager.MEDICINES,
        owner_id=OWNER,
        predicate=lambda medicine: medicine.quantity_in_stock > 0,
    )

    assert [record.medicine_id for record in mine] == ["MED-1", "MED-3"]
    assert [record.medicine_id for record in in_stock] == ["MED-1"]


def test_get_record_distinguishes_missing_and_foreign_rows(workbook):
    data_manager.insert_record(workbook, data_manager.MEDICINES, _medicine("MED-2", owner_id=OTHER))

    with pytest.raises(data_manager.RecordNotFoundError):
        data_manager.get_record(workbook, data_manager.MEDICINES, "MED-404", owner_id=OWNER)
    with pytest.raises(data_manager.RecordForbiddenError):
        data_manager.get_record(workbook, data_manager.MEDICINES, "MED-2", owner_id=OWNER)


def test_update_record_writes_selected_columns(workbook):
    data_manager.insert_record(workbook, data_manager.MEDICINES, _medicine())

    updated = data_manager.update_record(
        workbook,
        data_manager.MEDICINES,
        "MED-1",
        owner_id=OWNER,
        field_values={"QuantityInStock": 7},
    )

    assert updated.quantity_in_stock == 7
    stored = data_manager.get_record(workbook, data_manager.MEDICINES, "MED-1", owner_id=OWNER)
    assert stored == updated


def test_update_record_rejects_invalid_result_without_writing(workbook):
    """A patch that breaks a record constraint leaves the row untouched."""

    data_manager.insert_record(workbook, data_manager.MEDICINES, _medicine())

    with pytest.raises(ValueError):
        data_manager.update_record(
            workbook,
            data_manager.MEDICINES,
            "MED-1",
            owner_id=OWNER,
            field_values={"QuantityInStock": -1},
        )

    stored = data_manager.get_record(workbook, data_manager.MEDICINES, "MED-1", owner_id=OWNER)
    assert stored.quantity_in_stock == 12


@pytest.mark.parametrize("field", ["MedicineID", "OwnerID"])
def test_update_record_refuses_identity_columns(workbook, field):
    data_manager.insert_record(workbook, data_manager.MEDICINES, _medicine())
    with pytest.raises(ValueError):
        data_manager.update_record(
            workbook,
            data_manager.MEDICINES,
            "MED-1",
            owner_id=OWNER,
            field_values={field: "hijack"},
        )


def test_update_record_unknown_field_raises_key_error(workbook):
    data_manager.insert_record(workbook, data_manager.MEDICINES, _medicine())
    with pytest.raises(KeyError):
        data_manager.update_record(
            workbook,
            data_manager.MEDICINES,
            "MED-1",
            owner_id=OWNER,
            field_values={"Colour": "red"},
        )


def test_update_record_refuses_foreign_owner(workbook):
    data_manager.insert_record(workbook, data_manager.MEDICINES, _medicine(owner_id=OTHER))
    with pytest.raises(data_manager.RecordForbiddenError):
        data_manager.update_record(
            workbook,
            data_manager.MEDICINES,
            "MED-1",
            owner_id=OWNER,
            field_values={"QuantityInStock": 0},
        )


def test_delete_record_removes_row(workbook):
    data_manager.insert_record(workbook, data_manager.MEDICINES, _medicine("MED-1"))
    data_manager.insert_record(workbook, data_manager.MEDICINES, _medicine("MED-2"))

    data_manager.delete_record(workbook, data_manager.MEDICINES, "MED-1", owner_id=OWNER)

    remaining = data_manager.list_records(workbook, data_manager.MEDICINES, owner_id=OWNER)
    assert [record.medicine_id for record in remaining] == ["MED-2"]


def test_iter_records_flags_malformed_rows(workbook):
    """A damaged row is a store failure, not a business error."""

    workbook["Medicines"].append(["MED-X", OWNER, "Broken", None, None, "lots", 5, "1.00", None, None])
    with pytest.raises(data_manager.PersistenceError):
        data_manager.list_records(workbook, data_manager.MEDICINES, owner_id=OWNER)


# ---------------------------------------------------------------------------
# Record constraints and codecs
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "overrides",
    [
        {"name": ""},
        {"quantity_in_stock": -1},
        {"quantity_in_stock": 1.5},
        {"reorder_level": True},
        {"unit_price": Decimal("-0.01")},
        {"unit_price": 2.5},
        {"unit_price": Decimal("Infinity")},
        {"unit_price": Decimal("NaN")},
        {"unit_price": Decimal("sNaN")},
    ],
)
def test_medicine_row_enforces_constraints(overrides):
    with pytest.raises(ValueError):
        _medicine(**overrides)


def test_sale_item_row_requires_consistent_line_total():
    with pytest.raises(ValueError):
        data_manager.SaleItemRow(
            sale_item_id="SLI-1",
            owner_id=OWNER,
            sale_id="SAL-1",
            medicine_id="MED-1",
            quantity=3,
            unit_price=Decimal("2.00"),
            line_total=Decimal("5.00"),
        )


def test_sale_row_rejects_unknown_payment_method():
    with pytest.raises(ValueError):
        data_manager.SaleRow(
            sale_id="SAL-1",
            owner_id=OWNER,
            invoice_number="INV-1",
            sale_date=datetime(2026, 1, 1, tzinfo=UTC),
            customer_id=None,
            total_amount=Decimal("1.00"),
            payment_method="barter",
            payment_status="completed",
        )


def test_deserialize_medicine_coerces_excel_values():
    """Numbers typed into Excel should still decode into typed fields."""

    record = data_manager.deserialize_medicine(
        [1001, OWNER, "Ibuprofen", None, None, 4.0, "2", 3.5, datetime(2027, 5, 1), None]
    )

    assert record.medicine_id == "1001"
    assert record.quantity_in_stock == 4
    assert record.reorder_level == 2
    assert record.unit_price == Decimal("3.5")
    assert record.expiry_date == date(2027, 5, 1)


def test_deserialize_sale_item_rejects_fractional_quantity():
    with pytest.raises(ValueError):
        data_manager.deserialize_sale_item(["SLI-1", OWNER, "SAL-1", "MED-1", 1.5, "2.00", "3.00"])
