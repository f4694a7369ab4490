"""Integration tests for the GDPR export and deletion endpoints."""
from urllib.parse import urlparse

from app.models import AuthSession, DeletionRequest, ExportRequest
from app.services.export_service import ExportOrchestrator
from tests.factories import create_full_profile, create_session, create_user


class TestExportEndpoints:
    """Tests for /gdpr/exports."""

    def test_request_export(self, client, auth_headers, db, test_user):
        response = client.post("/gdpr/exports", json={"format": "json"}, headers=auth_headers)

        assert response.status_code == 202
        body = response.json()
        assert body["status"] == "pending"
        assert body["requestId"].startswith(f"export_{test_user.id}_")
        assert db.get(ExportRequest, body["requestId"]) is not None

    def test_second_export_is_rate_limited(self, client, auth_headers):
        client.post("/gdpr/exports", json={}, headers=auth_headers)

        response = client.post("/gdpr/exports", json={}, headers=auth_headers)

        assert response.status_code == 429
        assert response.json()["code"] == "resource-exhausted"
        assert 0 < int(response.headers["Retry-After"]) <= 24 * 3600

    def test_invalid_format(self, client, auth_headers):
        response = client.post("/gdpr/exports", json={"format": "xml"}, headers=auth_headers)

        assert response.status_code == 400
        assert response.json()["field"] == "format"

    def test_requires_authentication(self, client):
        assert client.post("/gdpr/exports", json={}).status_code == 401

    def test_export_download_flow(self, client, auth_headers, db, test_user, storage):
        create_full_profile(db, test_user)
        db.commit()
        request_id = client.post("/gdpr/exports", json={"format": "csv"}, headers=auth_headers).json()["requestId"]
        ExportOrchestrator(db, storage=storage).process_export(request_id)

        status = client.get(f"/gdpr/exports/{request_id}", headers=auth_headers).json()

        assert status["status"] == "completed"
        assert status["recordCount"] == 6
        download = client.get(urlparse(status["downloadUrl"]).path)
        assert download.status_code == 200
        assert download.headers["content-disposition"] == f'attachment; filename="{request_id}.csv"'
        assert download.headers["content-type"].startswith("text/csv")
        assert download.content

    def test_forged_download_token(self, client):
        response = client.get("/gdpr/exports/download/Zm9vfDE.bad-signature")
        assert response.status_code == 403

    def test_other_users_export_is_forbidden(self, client, auth_headers, db):
        other = create_user(db)
        other_headers = {"Authorization": f"Bearer {create_session(db, other).token}"}
        db.commit()
        request_id = client.post("/gdpr/exports", json={}, headers=other_headers).json()["requestId"]

        response = client.get(f"/gdpr/exports/{request_id}", headers=auth_headers)

        assert response.status_code == 403

    def test_unknown_export(self, client, auth_headers):
        assert client.get("/gdpr/exports/export_missing_1", headers=auth_headers).status_code == 404

    def test_list_exports(self, client, auth_headers):
        client.post("/gdpr/exports", json={}, headers=auth_headers)

        response = client.get("/gdpr/exports", headers=auth_headers)

        assert [r["status"] for r in response.json()["requests"]] == ["pending"]


class TestDeletionEndpoints:
    """Tests for /gdpr/deletions and /gdpr/recover."""

    def test_soft_deletion_signs_user_out(self, client, auth_headers, db, test_user):
        response = client.post("/gdpr/deletions", json={"type": "soft"}, headers=auth_headers)

        assert response.status_code == 202
        body = response.json()
        assert body["canRecover"] is True
        assert len(body["recoveryCode"]) == 6
        assert db.query(AuthSession).filter(AuthSession.user_id == test_user.id).count() == 0
        assert client.get("/auth/me", headers=auth_headers).status_code == 401

    def test_recover_without_signing_in(self, client, auth_headers, db, test_user):
        created = client.post("/gdpr/deletions", json={"type": "soft"}, headers=auth_headers).json()

        response = client.post(
            "/gdpr/recover",
            json={"email": "testuser@example.com", "recoveryCode": created["recoveryCode"]},
        )

        assert response.status_code == 200
        assert response.json()["status"] == "cancelled"
        db.expire_all()
        assert db.get(DeletionRequest, created["requestId"]).status == "cancelled"

    def test_recover_with_wrong_code(self, client, auth_headers):
        created = client.post("/gdpr/deletions", json={"type": "soft"}, headers=auth_headers).json()
        wrong = "000000" if created["recoveryCode"] != "000000" else "111111"

        response = client.post("/gdpr/recover", json={"email": "testuser@example.com", "recoveryCode": wrong})

        assert response.status_code == 400
        assert response.json()["field"] == "recoveryCode"

    def test_duplicate_request_conflicts(self, client, auth_headers):
        scope = {"type": "specific", "dataTypes": ["sessions"]}
        first = client.post("/gdpr/deletions", json={"type": "hard", "scope": scope}, headers=auth_headers).json()

        response = client.post("/gdpr/deletions", json={"type": "hard", "scope": scope}, headers=auth_headers)

        assert response.status_code == 409
        assert response.json()["status"] == "cancelled"
        latest = client.get("/gdpr/deletions?latest=true", headers=auth_headers).json()["request"]
        assert latest["requestId"] == first["requestId"]

    def test_cancel_and_status(self, client, auth_headers):
        scope = {"type": "specific", "dataTypes": ["consents"]}
        created = client.post(
            "/gdpr/deletions", json={"type": "soft", "scope": scope}, headers=auth_headers
        ).json()

        latest = client.get("/gdpr/deletions?latest=true", headers=auth_headers).json()["request"]
        assert latest["requestId"] == created["requestId"]

        response = client.post(
            f"/gdpr/deletions/{created['requestId']}/cancel",
            json={"recoveryCode": created["recoveryCode"], "reason": "changed my mind"},
            headers=auth_headers,
        )

        assert response.status_code == 200
        assert response.json()["cancellationReason"] == "changed my mind"
        assert client.get("/gdpr/deletions?latest=true", headers=auth_headers).json() == {"request": None}
        history = client.get("/gdpr/deletions", headers=auth_headers).json()["requests"]
        assert [r["status"] for r in history] == ["cancelled"]

    def test_reissue_recovery_code(self, client, auth_headers):
        scope = {"type": "specific", "dataTypes": ["settings"]}
        created = client.post(
            "/gdpr/deletions", json={"type": "soft", "scope": scope}, headers=auth_headers
        ).json()

        response = client.post(f"/gdpr/deletions/{created['requestId']}/recovery-code", headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["expiresAt"] == created["recoverDeadline"]
        cancel = client.post(
            f"/gdpr/deletions/{created['requestId']}/cancel",
            json={"recoveryCode": response.json()["recoveryCode"]},
            headers=auth_headers,
        )
        assert cancel.status_code == 200

    def test_deletion_rate_limit(self, client, auth_headers):
        scope = {"type": "specific", "dataTypes": ["subscriptions"]}
        for _ in range(3):
            created = client.post(
                "/gdpr/deletions", json={"type": "hard", "scope": scope}, headers=auth_headers
            ).json()
            client.post(f"/gdpr/deletions/{created['requestId']}/cancel", json={}, headers=auth_headers)

        response = client.post("/gdpr/deletions", json={"type": "hard", "scope": scope}, headers=auth_headers)

        assert response.status_code == 429
        assert "Retry-After" in response.headers

    def test_invalid_deletion_type(self, client, auth_headers):
        response = client.post("/gdpr/deletions", json={"type": "erase"}, headers=auth_headers)
        assert response.status_code == 400

    def test_other_users_deletion_is_forbidden(self, client, auth_headers, db):
        other = create_user(db)
        other_headers = {"Authorization": f"Bearer {create_session(db, other).token}"}
        db.commit()
        created = client.post(
            "/gdpr/deletions",
            json={"type": "hard", "scope": {"type": "specific", "dataTypes": ["sessions"]}},
            headers=other_headers,
        ).json()

        response = client.post(f"/gdpr/deletions/{created['requestId']}/cancel", json={}, headers=auth_headers)

        assert response.status_code == 403
