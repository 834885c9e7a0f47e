"""Tests for document normalization and coordinate handling."""

from datetime import datetime, timezone

import pytest

from servetracker.models import CaseStatus, Client, Coordinates, ServeAttempt
from servetracker.normalize import (
    add_client_names,
    format_coordinates,
    google_maps_url,
    has_valid_coordinates,
    normalize_case,
    normalize_client,
    normalize_document,
    normalize_many,
    normalize_serve,
    parse_coordinates,
    safe_format_coordinates,
    safe_google_maps_url,
)


class TestNormalizeServe:
    """Tests for normalize_serve."""

    def test_appwrite_snake_case_document(self) -> None:
        """Appwrite documents use $id and snake_case fields."""
        doc = {
            "$id": "abc123",
            "client_id": "client-1",
            "case_number": "CV-2023-0001",
            "status": "completed",
            "notes": "Served at front door",
            "coordinates": "40.7128,-74.0060",
            "timestamp": "2024-03-01T14:30:00.000+00:00",
            "image_data": "aGVsbG8=",
            "attempt_number": 2,
        }
        serve = normalize_serve(doc)

        assert serve is not None
        assert serve.id == "abc123"
        assert serve.client_id == "client-1"
        assert serve.case_number == "CV-2023-0001"
        assert serve.status == "completed"
        assert serve.attempt_number == 2
        assert serve.image_data == "aGVsbG8="
        assert serve.coordinates == Coordinates(latitude=40.7128, longitude=-74.006)
        assert serve.timestamp == datetime(2024, 3, 1, 14, 30, tzinfo=timezone.utc)

    def test_camel_case_document(self) -> None:
        """camelCase fields from older local records are accepted."""
        doc = {
            "id": "serve-1",
            "clientId": "client-9",
            "clientName": "Jane Roe",
            "caseNumber": "CV-1",
            "attemptNumber": 3,
            "imageData": "data:image/png;base64,xyz",
            "coordinates": {"latitude": 1.5, "longitude": 2.5},
        }
        serve = normalize_serve(doc)

        assert serve.id == "serve-1"
        assert serve.client_id == "client-9"
        assert serve.client_name == "Jane Roe"
        assert serve.attempt_number == 3
        assert serve.coordinates.latitude == 1.5

    def test_canonical_name_wins_over_alias(self) -> None:
        """The canonical field takes priority over its snake_case alias."""
        serve = normalize_serve({"id": "s", "caseNumber": "A", "case_number": "B"})
        assert serve.case_number == "A"

    def test_legacy_mongo_id(self) -> None:
        """The legacy API keys documents by _id."""
        serve = normalize_serve({"_id": "64f0c0ffee", "status": "failed"})
        assert serve.id == "64f0c0ffee"
        assert serve.status == "failed"

    def test_defaults_for_missing_fields(self) -> None:
        """Missing status, coordinates and timestamp get defaults."""
        before = datetime.now(timezone.utc)
        serve = normalize_serve({"id": "s1"})

        assert serve.status == "unknown"
        assert serve.coordinates is None
        assert serve.attempt_number == 1
        assert serve.client_name == "Unknown Client"
        assert serve.case_number == "Unknown"
        assert serve.timestamp >= before

    def test_missing_id_is_dropped(self) -> None:
        """Records without any id alias are dropped, not raised."""
        assert normalize_serve({"client_id": "c", "status": "completed"}) is None
        assert normalize_serve({"id": "", "status": "completed"}) is None
        assert normalize_serve(None) is None

    def test_epoch_millisecond_timestamp(self) -> None:
        """Timestamps stored as epoch milliseconds are converted."""
        serve = normalize_serve({"id": "s", "timestamp": 1700000000000})
        assert serve.timestamp == datetime.fromtimestamp(1700000000, tz=timezone.utc)


class TestNormalizeMany:
    """Tests for batch normalization."""

    def test_bad_records_do_not_fail_batch(self) -> None:
        """Records without ids are dropped and the rest survive in order."""
        docs = [
            {"$id": "a", "status": "completed"},
            {"status": "failed"},
            {"_id": "b"},
            {"id": "c"},
        ]
        serves = normalize_many("serve", docs)
        assert [s.id for s in serves] == ["a", "b", "c"]

    def test_all_dropped(self) -> None:
        """A batch with no resolvable ids yields an empty list."""
        assert normalize_many("client", [{"name": "x"}, {"email": "y"}]) == []

    def test_empty_input(self) -> None:
        assert normalize_many("serve", None) == []
        assert normalize_many("serve", []) == []


class TestNormalizeOtherEntities:
    """Tests for clients, cases and documents."""

    def test_client_additional_emails(self) -> None:
        client = normalize_client(
            {
                "$id": "c1",
                "name": "Acme",
                "email": "a@example.com",
                "additional_emails": ["b@example.com"],
                "$createdAt": "2024-01-01T00:00:00.000+00:00",
            }
        )
        assert client.additional_emails == ["b@example.com"]
        assert client.all_emails == ["a@example.com", "b@example.com"]
        assert client.created_at.year == 2024

    def test_case_status_mapping(self) -> None:
        """Status strings map case-insensitively; unknown ones become Pending."""
        base = {"$id": "k", "case_number": "CV-1", "client_id": "c"}
        assert normalize_case({**base, "status": "closed"}).status == CaseStatus.CLOSED
        assert normalize_case({**base, "status": "Active"}).status == CaseStatus.ACTIVE
        assert normalize_case({**base, "status": "weird"}).status == CaseStatus.PENDING
        assert normalize_case(base).status == CaseStatus.PENDING

    def test_case_without_required_fields_is_dropped(self) -> None:
        assert normalize_case({"$id": "k"}) is None

    def test_document(self) -> None:
        document = normalize_document(
            {
                "$id": "d1",
                "client_id": "c1",
                "file_path": "file-9",
                "file_name": "summons.pdf",
                "file_type": "application/pdf",
                "file_size": 2048,
            }
        )
        assert document.file_name == "summons.pdf"
        assert document.file_size == 2048
        assert document.case_number is None


class TestCoordinates:
    """Tests for coordinate parsing and validity."""

    @pytest.mark.parametrize(
        "value,expected",
        [
            ({"latitude": 40.7, "longitude": -74.0}, True),
            ("40.7,-74.0", True),
            (" 40.7 , -74.0 ", True),
            (None, False),
            ("not,coords", False),
            ("40.7", False),
            ("", False),
            ("95.0,10.0", False),
            ("10.0,190.0", False),
            ({"latitude": "nan", "longitude": 1}, False),
            ({"lat": 1, "lng": 2}, False),
            (42, False),
        ],
    )
    def test_has_valid_coordinates(self, value, expected: bool) -> None:
        assert has_valid_coordinates(value) is expected

    def test_json_encoded_object(self) -> None:
        coords = parse_coordinates('{"latitude": 12.5, "longitude": 99.1}')
        assert coords == Coordinates(latitude=12.5, longitude=99.1)

    def test_format_coordinates(self) -> None:
        text = format_coordinates(Coordinates(latitude=40.7128, longitude=-74.006))
        assert text == "40.712800° N, 74.006000° W"

    def test_google_maps_url(self) -> None:
        url = google_maps_url(Coordinates(latitude=1.0, longitude=2.0))
        assert url == "https://www.google.com/maps?q=1.0,2.0"

    def test_safe_fallbacks(self) -> None:
        assert safe_format_coordinates(None) == "No location data"
        assert safe_google_maps_url("garbage") == "#"


class TestAddClientNames:
    """Tests for add_client_names."""

    def test_fills_placeholder_only(self) -> None:
        clients = [Client(id="c1", name="Acme")]
        serves = [
            ServeAttempt(id="s1", client_id="c1"),
            ServeAttempt(id="s2", client_id="c1", client_name="Already Set"),
            ServeAttempt(id="s3", client_id="missing"),
        ]
        result = add_client_names(serves, clients)

        assert [s.client_name for s in result] == ["Acme", "Already Set", "Unknown Client"]
