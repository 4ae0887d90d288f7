"""
Tests for Greenlight Backend API endpoints.

Tests cover:
- Health check and configuration defaults
- Upload validation and the full upload -> poll -> completed flow
- Process endpoint idempotence and error mapping
- Results / submissions reads
- Email signup
- Book metadata lookup and connection diagnostics
"""

from io import BytesIO

from fastapi.testclient import TestClient

from conftest import build_pdf, count_submissions, wait_for
from greenlight_backend.analysis import InvalidCredentials, MalformedResponse, RateLimited
from greenlight_backend.main import AppContext, create_app
from greenlight_backend.models import SubmissionStatus


def _upload(client, pdf_bytes, synopsis="A short story.", filename="story.pdf"):
    return client.post(
        "/api/upload",
        files={"file": (filename, BytesIO(pdf_bytes), "application/pdf")},
        data={"synopsis": synopsis},
    )


def _poll_until_terminal(client, submission_id):
    def _terminal():
        body = client.get(f"/api/results/{submission_id}").json()
        return body if body["status"] in ("completed", "error") else None

    return wait_for(_terminal)


class TestHealthCheck:
    """Tests for the /healthz endpoint."""

    def test_health_check_returns_ok(self, client):
        """Health check should return status ok."""
        response = client.get("/healthz")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}


class TestConfigDefaults:
    """Tests for the /config/defaults endpoint."""

    def test_get_config_defaults(self, client):
        """Should return limits and lifecycle settings without secrets."""
        response = client.get("/config/defaults")
        assert response.status_code == 200

        data = response.json()
        assert data["limits"]["max_file_size_mb"] == 10
        assert data["limits"]["max_pages"] == 10
        assert "statuses" in data
        assert "api_key" not in response.text


class TestUpload:
    """Tests for the /api/upload endpoint."""

    def test_upload_returns_submission_id(self, client, sample_pdf):
        """A valid upload should return the new submission id."""
        response = _upload(client, sample_pdf)
        assert response.status_code == 200
        assert len(response.json()["submissionId"]) == 32

    def test_upload_then_poll_reaches_completed(self, client, analyzer, gate):
        """Polling should see a non-terminal status, then the completed analysis."""
        analyzer.gate = gate
        response = _upload(client, build_pdf("Hello world", "Second page"))
        submission_id = response.json()["submissionId"]

        early = client.get(f"/api/results/{submission_id}").json()
        assert early["status"] in ("uploaded", "processing")
        assert "analysis" not in early

        gate.set()
        final = _poll_until_terminal(client, submission_id)
        assert final["status"] == "completed"
        assert final["analysis"]["genre"]
        assert final["analysis"]["themes"]
        assert "error" not in final
        assert len(analyzer.calls) == 1

    def test_synopsis_round_trips_unchanged(self, client, sample_pdf):
        """The synopsis should come back exactly as it was sent."""
        synopsis = "  Élodie keeps a lighthouse; her sister keeps a secret.\nSet in 1920s Maine.  "
        submission_id = _upload(client, sample_pdf, synopsis=synopsis).json()["submissionId"]

        assert client.get(f"/api/results/{submission_id}").json()["synopsis"] == synopsis
        _poll_until_terminal(client, submission_id)
        assert client.get(f"/api/submissions/{submission_id}").json()["synopsis"] == synopsis

    def test_upload_missing_synopsis(self, client, sample_pdf, store):
        """Uploading without a synopsis should fail with 400."""
        response = client.post(
            "/api/upload",
            files={"file": ("story.pdf", BytesIO(sample_pdf), "application/pdf")},
        )
        assert response.status_code == 400
        assert "Missing required fields" in response.json()["error"]
        assert count_submissions(store) == 0

    def test_upload_missing_file(self, client):
        """Uploading without a file should fail with 400."""
        response = client.post("/api/upload", data={"synopsis": "A short story."})
        assert response.status_code == 400

    def test_upload_synopsis_too_long(self, client, sample_pdf, store):
        """Synopses over the character limit should be rejected."""
        response = _upload(client, sample_pdf, synopsis="x" * 1001)
        assert response.status_code == 400
        assert "1000" in response.json()["error"]
        assert count_submissions(store) == 0

    def test_upload_non_pdf(self, client, store):
        """Non-PDF uploads should be rejected."""
        response = client.post(
            "/api/upload",
            files={"file": ("notes.txt", BytesIO(b"not a pdf"), "text/plain")},
            data={"synopsis": "A short story."},
        )
        assert response.status_code == 400
        assert "PDF" in response.json()["error"]
        assert count_submissions(store) == 0

    def test_upload_pdf_without_extension(self, client, store, sample_pdf):
        """A PDF is accepted by its content, whatever its name or declared type."""
        response = client.post(
            "/api/upload",
            files={"file": ("manuscript", BytesIO(sample_pdf), "application/octet-stream")},
            data={"synopsis": "A short story."},
        )
        assert response.status_code == 200
        assert count_submissions(store) == 1

    def test_upload_pdf_named_file_with_wrong_content(self, client, store):
        """A .pdf name on non-PDF bytes should still be rejected."""
        response = _upload(client, b"just some text pretending")
        assert response.status_code == 400
        assert count_submissions(store) == 0

    def test_upload_too_many_pages(self, client, store):
        """PDFs over the page limit should fail without creating a record."""
        response = _upload(client, build_pdf(*[f"Page {n}" for n in range(11)]))
        assert response.status_code == 400
        assert "page limit" in response.json()["error"]
        assert count_submissions(store) == 0

    def test_upload_too_large(self, client, store):
        """Files over the size limit should fail without creating a record."""
        oversized = b"%PDF-1.4\n" + b"0" * (10 * 1024 * 1024)
        response = _upload(client, oversized)
        assert response.status_code == 400
        assert "10MB" in response.json()["error"]
        assert count_submissions(store) == 0

    def test_upload_without_text(self, client, store):
        """A PDF with no extractable text should fail with an empty-content error."""
        response = _upload(client, build_pdf(""))
        assert response.status_code == 400
        assert "no readable text" in response.json()["error"]
        assert count_submissions(store) == 0


class TestProcess:
    """Tests for the /api/process/{id} endpoint."""

    def test_process_completes_uploaded_submission(self, client, store, analyzer, submission_fields):
        """Processing an uploaded record should return the analysis."""
        submission_id = store.insert(submission_fields)
        response = client.post(f"/api/process/{submission_id}")
        assert response.status_code == 200

        data = response.json()
        assert data["message"] == "Analysis completed"
        assert data["status"] == "completed"
        assert data["analysis"]["genre"] == "Literary Fiction"
        assert analyzer.calls == [(submission_fields["text"], submission_fields["synopsis"])]

    def test_process_twice_does_not_reanalyze(self, client, store, analyzer, submission_fields):
        """A completed submission should be returned without a second analysis."""
        submission_id = store.insert(submission_fields)
        first = client.post(f"/api/process/{submission_id}").json()
        second = client.post(f"/api/process/{submission_id}").json()

        assert second["analysis"] == first["analysis"]
        assert len(analyzer.calls) == 1

    def test_process_in_progress(self, client, store, analyzer, submission_fields):
        """A record already processing should report progress, not start again."""
        submission_id = store.insert(submission_fields)
        store.transition(submission_id, [SubmissionStatus.UPLOADED], SubmissionStatus.PROCESSING)

        response = client.post(f"/api/process/{submission_id}")
        assert response.status_code == 202
        assert response.json()["message"] == "Analysis in progress"
        assert analyzer.calls == []

    def test_process_malformed_response_records_error(self, client, store, analyzer, submission_fields):
        """Non-JSON completions should leave the submission in error without analysis."""
        analyzer.error = MalformedResponse("Failed to parse analysis results: Expecting value")
        submission_id = store.insert(submission_fields)

        response = client.post(f"/api/process/{submission_id}")
        assert response.status_code == 502
        assert response.json() == {"error": "Error during analysis"}

        record = client.get(f"/api/results/{submission_id}").json()
        assert record["status"] == "error"
        assert "Failed to parse" in record["error"]
        assert "analysis" not in record

    def test_process_already_failed(self, client, store, analyzer, submission_fields):
        """Processing a failed submission should not retry the analysis."""
        analyzer.error = InvalidCredentials("Completion service rejected credentials")
        submission_id = store.insert(submission_fields)
        client.post(f"/api/process/{submission_id}")

        response = client.post(f"/api/process/{submission_id}")
        assert response.status_code == 409
        assert "rejected credentials" in response.json()["error"]
        assert len(analyzer.calls) == 1

    def test_rate_limited_analysis_is_not_retried(self, client, store, analyzer, submission_fields):
        """Transient upstream failures are recorded, not retried."""
        analyzer.error = RateLimited("Completion service rate limit reached")
        submission_id = store.insert(submission_fields)

        client.post(f"/api/process/{submission_id}")
        record = client.get(f"/api/results/{submission_id}").json()
        assert record["status"] == "error"
        assert "rate limit" in record["error"]
        assert len(analyzer.calls) == 1

    def test_unexpected_failure_is_generic(self, client, store, analyzer, submission_fields):
        """Unexpected exceptions should be recorded with a generic message."""
        analyzer.error = KeyError("choices")
        submission_id = store.insert(submission_fields)

        response = client.post(f"/api/process/{submission_id}")
        assert response.status_code == 500
        record = client.get(f"/api/results/{submission_id}").json()
        assert record["error"] == "Unexpected error during analysis"

    def test_process_malformed_id(self, client):
        """Malformed ids should fail with 400."""
        response = client.post("/api/process/not-a-valid-id")
        assert response.status_code == 400
        assert response.json()["error"] == "Invalid submission ID format"

    def test_process_unknown_id(self, client):
        """Unknown ids should fail with 404."""
        response = client.post(f"/api/process/{'0' * 32}")
        assert response.status_code == 404


class TestResults:
    """Tests for the results and submissions read endpoints."""

    def test_results_malformed_id(self, client):
        """Malformed ids should fail with 400."""
        assert client.get("/api/results/xyz").status_code == 400
        assert client.get("/api/submissions/xyz").status_code == 400

    def test_results_unknown_id(self, client):
        """Unknown ids should fail with 404."""
        response = client.get(f"/api/results/{'a' * 32}")
        assert response.status_code == 404
        assert response.json() == {"error": "Submission not found"}

    def test_results_returns_full_record(self, client, store, submission_fields):
        """The read endpoint should return the full record."""
        submission_id = store.insert(submission_fields)
        data = client.get(f"/api/submissions/{submission_id}").json()

        assert data["id"] == submission_id
        assert data["status"] == "uploaded"
        assert data["file_name"] == "story.pdf"
        assert data["file_size"] == 2048
        assert data["text"] == submission_fields["text"]
        assert "created_at" in data


class TestSignup:
    """Tests for the /api/signup endpoint."""

    def test_signup_success(self, client):
        """A valid signup should succeed."""
        response = client.post("/api/signup", json={"email": "reader@example.com", "submissionId": "b" * 32})
        assert response.status_code == 200
        assert response.json() == {"success": True}

    def test_signup_missing_fields(self, client):
        """Missing fields should fail with 400."""
        response = client.post("/api/signup", json={"email": "reader@example.com"})
        assert response.status_code == 400
        assert "Missing required fields" in response.json()["error"]

    def test_signup_invalid_email(self, client):
        """Malformed emails should fail with 400."""
        response = client.post("/api/signup", json={"email": "nobody", "submissionId": "b" * 32})
        assert response.status_code == 400

    def test_signup_invalid_submission_id(self, client):
        """Malformed submission ids should fail with 400."""
        response = client.post("/api/signup", json={"email": "reader@example.com", "submissionId": "123"})
        assert response.status_code == 400


class TestBookMetadata:
    """Tests for the /api/book-metadata endpoint."""

    def test_book_metadata(self, client, analyzer):
        """Should return publication details for a title."""
        response = client.post("/api/book-metadata", json={"title": "Station Eleven"})
        assert response.status_code == 200
        assert response.json()["author"] == "Jane Doe"
        assert analyzer.metadata_calls == ["Station Eleven"]

    def test_book_metadata_upstream_failure(self, client, analyzer):
        """Upstream failures should map to 502."""
        analyzer.error = RateLimited("slow down")
        response = client.post("/api/book-metadata", json={"title": "Station Eleven"})
        assert response.status_code == 502

    def test_book_metadata_blank_title(self, client, analyzer):
        """A whitespace-only title is rejected before any lookup."""
        response = client.post("/api/book-metadata", json={"title": "   "})
        assert response.status_code == 400
        assert analyzer.metadata_calls == []

    def test_book_metadata_title_is_stripped(self, client, analyzer):
        """Surrounding whitespace is removed before the lookup."""
        response = client.post("/api/book-metadata", json={"title": "  Station Eleven "})
        assert response.status_code == 200
        assert analyzer.metadata_calls == ["Station Eleven"]


class TestBookDetails:
    """Tests for the /api/book-details endpoint."""

    def test_book_details(self, client, analyzer):
        """Should return the selling details in camelCase."""
        response = client.post("/api/book-details", json={"text": "It was a dark and stormy night."})
        assert response.status_code == 200
        data = response.json()
        assert data["genre"] == "Literary Fiction"
        assert data["targetAudience"] == "Adult readers of character-driven fiction"
        assert data["comparableTitles"] == ["Station Eleven by Emily St. John Mandel"]
        assert data["uniqueSellingPoints"] == ["Lyrical coastal setting"]
        assert analyzer.details_calls == ["It was a dark and stormy night."]

    def test_book_details_missing_text(self, client, analyzer):
        """A request without text should fail with 400."""
        response = client.post("/api/book-details", json={})
        assert response.status_code == 400
        assert "text" in response.json()["error"]
        assert analyzer.details_calls == []

    def test_book_details_blank_text(self, client, analyzer):
        response = client.post("/api/book-details", json={"text": "  \n "})
        assert response.status_code == 400
        assert analyzer.details_calls == []

    def test_book_details_upstream_failure(self, client, analyzer):
        """Completion failures and unparsable answers should map to 502."""
        analyzer.error = MalformedResponse("Failed to parse book details")
        response = client.post("/api/book-details", json={"text": "It was a dark and stormy night."})
        assert response.status_code == 502
        assert response.json() == {"error": "Failed to fetch book details"}


class TestDiagnostics:
    """Tests for the /api/diagnostics/connections endpoint."""

    def test_connections_report(self, client):
        """Both connection checks should succeed against the test doubles."""
        data = client.get("/api/diagnostics/connections").json()
        assert data["database"]["success"] is True
        assert data["openai"]["success"] is True
        assert data["env"]["has_openai_api_key"] is False

    def test_connections_report_failure(self, client, analyzer):
        """A failing completion service should be reported, not raised."""
        analyzer.connection_error = InvalidCredentials("OpenAI API key is not configured")
        data = client.get("/api/diagnostics/connections").json()
        assert data["openai"] == {"success": False, "error": "OpenAI API key is not configured"}


class TestLifespan:
    """Tests for the startup and periodic reconcile sweeps."""

    def test_periodic_sweep_survives_failures(self, settings, store, analyzer, manager, monkeypatch):
        """A failing sweep is logged and the next one still runs; shutdown still closes the manager."""
        settings.lifecycle.reconcile_interval_seconds = 0.01
        sweeps = []

        def failing_reconcile(now=None):
            sweeps.append(now)
            raise ValueError("unreadable status tag")

        monkeypatch.setattr(manager, "reconcile", failing_reconcile)
        app = create_app(context=AppContext(settings=settings, store=store, analyzer=analyzer, manager=manager))

        with TestClient(app) as test_client:
            assert test_client.get("/healthz").status_code == 200
            wait_for(lambda: len(sweeps) >= 4)

        assert manager.schedule("a" * 32) is False
