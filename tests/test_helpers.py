"""Tests for ``treasury_ingest.helpers``."""
from __future__ import annotations

import logging
from datetime import datetime

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from treasury_ingest import db
from treasury_ingest.helpers import (
    VALIDATION_SCHEMAS,
    DatabaseHelpers,
    ValidationError,
    name_similarity,
    sanitize_text,
    validate_input,
)


def filing_row(entity_id: int, url: str, **overrides):
    row = {
        "entity_id": entity_id,
        "pdf_url": url,
        "btc": 100.0,
        "disclosed_at": datetime(2024, 1, 15),
        "source": "HKEX",
        "title": "Purchase of Bitcoin",
        "filing_type": "acquisition",
        "confidence": 90,
    }
    row.update(overrides)
    return row


def count(engine, table) -> int:
    with engine.connect() as conn:
        return conn.execute(select(func.count()).select_from(table)).scalar_one()


class TestValidation:
    def test_valid_fields_are_trimmed(self):
        validated = validate_input(
            {"ticker": " MSTR ", "url": "https://example.com/a", "btc_amount": "1.5", "entity_name": "Meitu, Inc."},
            VALIDATION_SCHEMAS,
        )
        assert validated == {
            "ticker": "MSTR",
            "url": "https://example.com/a",
            "btc_amount": "1.5",
            "entity_name": "Meitu, Inc.",
        }

    def test_missing_fields_are_skipped(self):
        assert validate_input({"ticker": "1611.HK"}, VALIDATION_SCHEMAS) == {"ticker": "1611.HK"}

    @pytest.mark.parametrize(
        "field, value",
        [
            ("ticker", "mstr"),
            ("url", "http://insecure.example.com"),
            ("btc_amount", "-5"),
            ("btc_amount", "1.123456789"),
            ("entity_name", "Robert'); DROP TABLE entities;--"),
        ],
    )
    def test_invalid_field_named(self, field, value):
        with pytest.raises(ValidationError) as excinfo:
            validate_input({field: value}, VALIDATION_SCHEMAS)
        assert excinfo.value.field == field
        assert str(excinfo.value).startswith(f"Invalid {field}")

    def test_sanitize_text(self):
        assert sanitize_text("<p>Hello <script>x()</script><b>there</b></p>") == "Hello there"
        assert sanitize_text(None) == ""

    def test_name_similarity(self):
        assert name_similarity("Boyaa Interactive", "boyaa   interactive") == 1.0
        assert name_similarity("Boyaa Interactive", "Boyaa Interactiv") > 0.9
        assert name_similarity("Meitu", "Tesla") < 0.5


class TestUpsert:
    def test_insert_then_update(self, helpers, engine, make_entity):
        entity = make_entity("1611.HK")
        first = helpers.upsert_with_conflict_resolution(
            db.raw_filings, filing_row(entity.id, "https://x/1.pdf"), ("entity_id", "pdf_url")
        )
        second = helpers.upsert_with_conflict_resolution(
            db.raw_filings, filing_row(entity.id, "https://x/1.pdf", btc=150.0), ("entity_id", "pdf_url")
        )
        assert (first.operation, second.operation) == ("insert", "update")
        assert second.row["id"] == first.row["id"]
        assert second.row["btc"] == 150.0
        assert count(engine, db.raw_filings) == 1

    def test_merge_keeps_unmentioned_columns(self, helpers, make_entity):
        entity = make_entity("1611.HK")
        helpers.upsert_with_conflict_resolution(
            db.raw_filings, filing_row(entity.id, "https://x/1.pdf", total_holdings=2000.0), ("entity_id", "pdf_url")
        )
        data = filing_row(entity.id, "https://x/1.pdf")
        updated = helpers.upsert_with_conflict_resolution(db.raw_filings, data, ("entity_id", "pdf_url"), "merge")
        assert updated.row["total_holdings"] == 2000.0

    def test_replace_clears_unmentioned_columns(self, helpers, make_entity):
        entity = make_entity("1611.HK")
        helpers.upsert_with_conflict_resolution(
            db.raw_filings, filing_row(entity.id, "https://x/1.pdf", total_holdings=2000.0), ("entity_id", "pdf_url")
        )
        updated = helpers.upsert_with_conflict_resolution(
            db.raw_filings, filing_row(entity.id, "https://x/1.pdf"), ("entity_id", "pdf_url"), "replace"
        )
        assert updated.row["total_holdings"] is None
        assert updated.row["title"] == "Purchase of Bitcoin"

    def test_preserved_columns_survive_update(self, helpers, make_entity):
        entity = make_entity("1611.HK")
        helpers.upsert_with_conflict_resolution(
            db.raw_filings, filing_row(entity.id, "https://x/1.pdf", verified=True), ("entity_id", "pdf_url")
        )
        updated = helpers.upsert_with_conflict_resolution(
            db.raw_filings,
            filing_row(entity.id, "https://x/1.pdf", verified=False),
            ("entity_id", "pdf_url"),
            preserve=("verified",),
        )
        assert updated.row["verified"] is True

    def test_missing_key_and_unknown_strategy(self, helpers):
        with pytest.raises(ValueError):
            helpers.upsert_with_conflict_resolution(db.raw_filings, {"entity_id": 1}, ("entity_id", "pdf_url"))
        with pytest.raises(ValueError):
            helpers.upsert_with_conflict_resolution(
                db.raw_filings, filing_row(1, "https://x"), ("entity_id", "pdf_url"), "overwrite"
            )


class TestBatchOperation:
    def test_collects_successes_and_failures(self, helpers):
        def operation(value: int) -> int:
            if value % 3 == 0:
                raise ValueError(f"bad {value}")
            return value * 10

        result = helpers.batch_operation(list(range(1, 8)), operation, batch_size=2)
        assert sorted(result.successful) == [10, 20, 40, 50, 70]
        assert sorted(failure.item for failure in result.failed) == [3, 6]
        assert all(isinstance(failure.error, ValueError) for failure in result.failed)
        assert result.aborted is False

    def test_stops_after_failing_chunk(self, helpers):
        seen: list[int] = []

        def operation(value: int) -> int:
            seen.append(value)
            if value == 2:
                raise RuntimeError("stop")
            return value

        result = helpers.batch_operation([1, 2, 3, 4, 5], operation, batch_size=2, continue_on_error=False)
        assert result.aborted is True
        assert sorted(seen) == [1, 2]
        assert [failure.item for failure in result.failed] == [2]

    def test_empty_input(self, helpers):
        result = helpers.batch_operation([], lambda item: item)
        assert result.successful == [] and result.failed == []


class TestEntityResolution:
    def test_find_or_create_is_idempotent(self, helpers, engine):
        first, created = helpers.find_or_create_entity("Meitu Inc", "1357.HK", "HKEX", "HK")
        again, created_again = helpers.find_or_create_entity("Meitu Inc", "1357.HK", "HKEX", "HK")
        assert created is True and created_again is False
        assert again.id == first.id
        assert count(engine, db.entities) == 1

    def test_creation_is_audited(self, helpers, engine):
        entity, _ = helpers.find_or_create_entity("Meitu Inc", "1357.HK", "HKEX", "HK")
        with engine.connect() as conn:
            row = conn.execute(select(db.audit_logs)).one()
        assert row.action == "entity_created"
        assert row.entity_id == entity.id
        assert row.details["ticker"] == "1357.HK"

    def test_case_insensitive_name_match(self, helpers):
        entity, _ = helpers.find_or_create_entity("Boyaa Interactive", "0434.HK", "HKEX", "HK")
        assert helpers.resolve_entity("BOYAA INTERACTIVE", "434.HK").id == entity.id

    def test_fuzzy_match_logs_warning(self, helpers, caplog):
        entity, _ = helpers.find_or_create_entity("Boyaa Interactive International", "0434.HK", "HKEX", "HK")
        with caplog.at_level(logging.WARNING, logger="treasury_ingest.helpers"):
            match = helpers.resolve_entity("Boyaa Interactive Internationl", None)
        assert match.id == entity.id
        assert "Probable duplicate" in caplog.text

    def test_dissimilar_names_do_not_match(self, helpers):
        helpers.find_or_create_entity("Boyaa Interactive", "0434.HK", "HKEX", "HK")
        assert helpers.resolve_entity("Meitu", None) is None

    def test_without_fuzzy_only_ticker_counts(self, helpers):
        helpers.find_or_create_entity("Unknown Entity 1234", "1234.HK", "HKEX", "HK", fuzzy=False)
        other, created = helpers.find_or_create_entity("Unknown Entity 1235", "1235.HK", "HKEX", "HK", fuzzy=False)
        assert created is True
        assert other.ticker == "1235.HK"

    def test_entity_exists(self, helpers, make_entity):
        entity = make_entity("1611.HK")
        assert helpers.entity_exists(entity.id)
        assert not helpers.entity_exists(entity.id + 100)


class TestAdvisoryLocks:
    def test_mutual_exclusion(self, engine):
        clock = {"now": 0.0}

        def sleep(seconds: float) -> None:
            clock["now"] += seconds

        helpers = DatabaseHelpers(engine, sleep=sleep, clock=lambda: clock["now"])
        holder = helpers.acquire_advisory_lock("scan-hkex-filings", timeout=1.0)
        assert holder is not None
        assert helpers.acquire_advisory_lock("scan-hkex-filings", timeout=0.5) is None
        assert db.is_locked(engine, "scan-hkex-filings")

        assert helpers.release_advisory_lock("scan-hkex-filings", holder) is True
        assert helpers.acquire_advisory_lock("scan-hkex-filings", timeout=0) is not None

    def test_release_by_non_holder_is_refused(self, helpers, caplog):
        holder = helpers.acquire_advisory_lock("job", timeout=0)
        with caplog.at_level(logging.WARNING, logger="treasury_ingest.helpers"):
            assert helpers.release_advisory_lock("job", "someone-else") is False
        assert "was not held" in caplog.text
        assert helpers.release_advisory_lock("job", holder) is True

    def test_expired_lock_is_reaped(self, helpers):
        assert helpers.acquire_advisory_lock("job", timeout=0, ttl=-1) is not None
        assert helpers.acquire_advisory_lock("job", timeout=0) is not None

    def test_store_failure_raises_after_timeout(self, tmp_path):
        bare = db.create_db_engine(f"sqlite:///{tmp_path / 'bare.db'}")
        clock = {"now": 0.0}

        def sleep(seconds: float) -> None:
            clock["now"] += seconds

        helpers = DatabaseHelpers(bare, sleep=sleep, clock=lambda: clock["now"])
        with pytest.raises(OperationalError, match="no such table"):
            helpers.acquire_advisory_lock("job", timeout=1.0)
        assert clock["now"] >= 1.0


class TestAudit:
    def test_failures_are_logged_not_raised(self, engine, caplog):
        helpers = DatabaseHelpers(engine)
        db.audit_logs.drop(engine)
        with caplog.at_level(logging.ERROR, logger="treasury_ingest.helpers"):
            helpers.create_audit_log("anything", details={"a": 1})
        assert "Failed to create audit log" in caplog.text
