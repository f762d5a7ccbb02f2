"""Tests for FastAPI web API.

Uses TestClient against an app without lifespan, wired to an Orchestrator
whose provider calls are mocked with respx.
"""

import json
from itertools import count

import httpx
import pytest
import respx
from fastapi import FastAPI
from fastapi.testclient import TestClient

from release_orchestrator import __version__
from release_orchestrator.builds.webhooks import sign_payload
from release_orchestrator.config import Settings
from release_orchestrator.runtime import Orchestrator
from web.app import include_routers

BASE_URL = "https://provider.example.com/v2"
SECRET = "whsec-test"


def create_test_app() -> FastAPI:
    """Create a minimal FastAPI app for testing without lifespan."""
    application = FastAPI(title="Release Orchestrator API", version=__version__)
    include_routers(application)
    return application


@pytest.fixture
def settings(tmp_path):
    """Settings isolated from the environment, with fast failure."""
    return Settings(
        _env_file=None,
        db_url=f"sqlite:///{tmp_path / 'test.db'}",
        artifacts_dir=tmp_path / "artifacts",
        provider_base_url=BASE_URL,
        provider_token="token",
        webhook_secret=SECRET,
        storage_signing_key="signing-key",
        retry_max_attempts=1,
        retry_initial_delay=0,
        poll_interval=3600,
        shutdown_grace_period=1,
    )


@pytest.fixture
def provider_api():
    """respx router for the provider API."""
    with respx.mock(base_url=BASE_URL, assert_all_called=False) as mock:
        yield mock


@pytest.fixture
def runtime(settings, session_factory, provider_api):
    """Orchestrator without started workers."""
    http_client = httpx.Client(base_url=BASE_URL)
    runtime = Orchestrator(settings, session_factory, http_client=http_client)
    yield runtime
    runtime.close()
    http_client.close()


@pytest.fixture
def client(runtime, session_factory):
    """Test client for the API."""
    app = create_test_app()
    app.state.session_factory = session_factory
    app.state.runtime = runtime
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def project_id(client):
    """A registered project."""
    response = client.post(
        "/projects",
        json={
            "name": "Field Notes",
            "slug": "field-notes",
            "bundle_id_ios": "com.example.fieldnotes",
            "bundle_id_android": "com.example.fieldnotes",
        },
    )
    assert response.status_code == 201
    return response.json()["id"]


@pytest.fixture
def accepting_provider(provider_api):
    """Provider routes for a build that is registered and accepted."""
    provider_api.post("/projects").respond(201, json={"id": "prov-1"})
    provider_api.post("/projects/prov-1/builds").respond(
        201, json={"id": "ext-1", "status": "in-queue", "platform": "ios"}
    )
    return provider_api


@pytest.fixture
def publishing_provider(provider_api):
    """Provider routes accepting OTA publishes."""
    ids = count(1)
    provider_api.get(url__regex=r".*/branches/.+").respond(200, json={})
    provider_api.post("/updates").mock(
        side_effect=lambda request: httpx.Response(200, json={"id": f"upd-{next(ids)}"})
    )
    return provider_api


def signed_webhook(client, payload):
    body = json.dumps(payload).encode()
    return client.post(
        "/webhooks/builds",
        content=body,
        headers={"expo-signature": sign_payload(body, SECRET), "content-type": "application/json"},
    )


def trigger(client, project_id, **overrides):
    body = {"project_id": project_id, "platform": "ios", "version": 1}
    body.update(overrides)
    return client.post("/builds", json=body)


class TestHealthAndConfig:
    """Tests for health and config endpoints."""

    def test_health(self, client):
        """Health reports circuits, jobs and polls."""
        response = client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["version"] == __version__
        assert data["circuits"] == {"provider": "closed", "storage": "closed"}
        assert data["jobs"]["waiting"] == 0
        assert data["active_polls"] == 0

    def test_root(self, client):
        """Root returns the API name."""
        response = client.get("/")
        assert response.status_code == 200
        assert response.json()["name"] == "Release Orchestrator API"

    def test_get_config_masks_secrets(self, client):
        """Secrets are masked in the config view."""
        response = client.get("/config")
        assert response.status_code == 200
        data = response.json()
        assert data["provider_token"] == "***"
        assert data["webhook_secret"] == "***"
        assert data["provider_base_url"] == BASE_URL


class TestProjects:
    """Tests for project endpoints."""

    def test_create_and_get(self, client, project_id):
        """A registered project can be fetched."""
        response = client.get(f"/projects/{project_id}")
        assert response.status_code == 200
        assert response.json()["slug"] == "field-notes"
        assert [p["id"] for p in client.get("/projects").json()] == [project_id]

    def test_duplicate_slug(self, client, project_id):
        """Slugs are unique."""
        response = client.post("/projects", json={"name": "Other", "slug": "field-notes"})
        assert response.status_code == 409
        assert response.json()["detail"]["code"] == "project_exists"

    def test_invalid_slug(self, client):
        """Slugs must be URL-safe."""
        response = client.post("/projects", json={"name": "X", "slug": "Not Valid"})
        assert response.status_code == 422

    def test_not_found(self, client):
        """Unknown projects return 404."""
        response = client.get("/projects/missing")
        assert response.status_code == 404
        assert response.json()["detail"]["code"] == "project_not_found"


class TestBuilds:
    """Tests for build endpoints."""

    def test_trigger_build(self, client, project_id):
        """A trigger returns 202 with a queued build."""
        response = trigger(client, project_id, profile="preview")
        assert response.status_code == 202
        data = response.json()
        assert data["status"] == "queued"
        assert data["profile"] == "preview"

    def test_trigger_unknown_project(self, client):
        """Unknown projects return 404."""
        response = trigger(client, "missing")
        assert response.status_code == 404
        assert response.json()["detail"]["code"] == "project_not_found"

    def test_trigger_invalid_body(self, client, project_id):
        """Invalid versions and platforms are rejected."""
        assert trigger(client, project_id, version=0).status_code == 422
        assert trigger(client, project_id, platform="web").status_code == 422

    def test_trigger_while_shutting_down(self, client, project_id, runtime):
        """A closed queue returns 503."""
        runtime.queue.close()
        response = trigger(client, project_id)
        assert response.status_code == 503
        assert response.json()["detail"]["code"] == "shutting_down"

    def test_list_builds(self, client, project_id):
        """Listing paginates and filters."""
        trigger(client, project_id, version=1)
        trigger(client, project_id, version=2, platform="android")

        data = client.get("/builds", params={"limit": 1}).json()
        assert data["total"] == 2
        assert len(data["items"]) == 1

        android = client.get("/builds", params={"platform": "android"}).json()
        assert [b["version"] for b in android["items"]] == [2]

    def test_list_builds_invalid_status(self, client):
        """Unknown status filters return 400."""
        response = client.get("/builds", params={"status": "exploded"})
        assert response.status_code == 400
        assert response.json()["detail"]["code"] == "invalid_status"

    def test_get_build_not_found(self, client):
        """Unknown builds return 404."""
        for path in ("/builds/missing", "/builds/missing/status"):
            response = client.get(path)
            assert response.status_code == 404
            assert response.json()["detail"]["code"] == "build_not_found"

    def test_cancel(self, client, project_id):
        """A queued build can be cancelled once."""
        build_id = trigger(client, project_id).json()["id"]

        response = client.post(f"/builds/{build_id}/cancel")
        assert response.status_code == 200
        assert response.json()["status"] == "cancelled"

        again = client.post(f"/builds/{build_id}/cancel")
        assert again.status_code == 409
        assert again.json()["detail"]["code"] == "invalid_state"

    def test_logs_and_download_before_acceptance(self, client, project_id):
        """A queued build has neither logs nor an artifact."""
        build_id = trigger(client, project_id).json()["id"]

        assert client.get(f"/builds/{build_id}/logs").status_code == 409
        assert client.get(f"/builds/{build_id}/download").status_code == 400

    def test_download_ttl_bounds(self, client, project_id):
        """expires_in is bounded."""
        build_id = trigger(client, project_id).json()["id"]

        response = client.get(f"/builds/{build_id}/download", params={"expires_in": 10})
        assert response.status_code == 422


class TestBuildLifecycle:
    """End-to-end build flow through worker, webhook and download."""

    def test_success_flow(self, client, project_id, runtime, accepting_provider):
        """A triggered build is accepted, completed by webhook and downloadable."""
        accepting_provider.get("/files/app.ipa").respond(200, content=b"IPA-BYTES")
        accepting_provider.get("/builds/ext-1/logs").respond(200, text="Build succeeded")

        build_id = trigger(client, project_id).json()["id"]
        assert runtime.workers.run_once() is not None

        status = client.get(f"/builds/{build_id}/status").json()
        assert status["status"] == "building"
        assert status["external_build_id"] == "ext-1"
        assert client.get("/health").json()["active_polls"] == 1

        ack = signed_webhook(
            client,
            {
                "id": "ext-1",
                "status": "finished",
                "artifacts": {"buildUrl": f"{BASE_URL}/files/app.ipa"},
            },
        )
        assert ack.status_code == 200
        assert ack.json()["outcome"] == "applied"
        assert runtime.builds.wait_for_background(10)

        duplicate = signed_webhook(client, {"id": "ext-1", "status": "finished"})
        assert duplicate.json()["outcome"] == "duplicate"

        status = client.get(f"/builds/{build_id}/status").json()
        assert status["status"] == "success"
        assert status["artifact_available"] is True

        download = client.get(f"/builds/{build_id}/download", params={"expires_in": 600})
        assert download.status_code == 200
        assert download.json()["expires_in"] == 600
        artifact = client.get(download.json()["download_url"])
        assert artifact.status_code == 200
        assert artifact.content == b"IPA-BYTES"
        assert "attachment" in artifact.headers["content-disposition"]

        text_logs = client.get(f"/builds/{build_id}/logs")
        assert text_logs.text == "Build succeeded"
        json_logs = client.get(
            f"/builds/{build_id}/logs", headers={"accept": "application/json"}
        )
        assert json_logs.json() == {"build_id": build_id, "logs": "Build succeeded"}

    def test_provider_unavailable_keeps_job(self, client, project_id, runtime, provider_api):
        """A provider outage leaves the build queued and the job waiting."""
        provider_api.post("/projects").respond(503)

        build_id = trigger(client, project_id).json()["id"]
        runtime.workers.run_once()

        assert client.get(f"/builds/{build_id}").json()["status"] == "queued"
        job = runtime.queue.get(build_id)
        assert job.status == "waiting"
        assert job.attempts == 1

    def test_tampered_artifact_url(self, client):
        """Artifact URLs with a bad signature are refused."""
        response = client.get(
            "/artifacts/builds/p/b.ipa", params={"expires": 9999999999, "signature": "0" * 64}
        )
        assert response.status_code == 403
        assert response.json()["detail"]["code"] == "signature_invalid"


class TestWebhooks:
    """Tests for the webhook endpoint."""

    def test_bad_signature(self, client):
        """Unsigned deliveries return 401."""
        response = client.post(
            "/webhooks/builds",
            content=b'{"id": "ext-1", "status": "finished"}',
            headers={"expo-signature": "sha256=" + "0" * 64},
        )
        assert response.status_code == 401
        assert response.json()["detail"]["code"] == "signature_invalid"

    def test_non_ascii_signature(self, client):
        """A non-ASCII signature header is rejected with 401."""
        response = client.post(
            "/webhooks/builds",
            content=b'{"id": "ext-1", "status": "finished"}',
            headers={"expo-signature": "sha256=éé".encode("utf-8")},
        )
        assert response.status_code == 401
        assert response.json()["detail"]["code"] == "signature_invalid"

    def test_invalid_payload(self, client):
        """Signed bodies without a build id return 400."""
        response = signed_webhook(client, {"status": "finished"})
        assert response.status_code == 400
        assert response.json()["detail"]["code"] == "invalid_payload"

    def test_unknown_build(self, client):
        """Unknown builds are acknowledged."""
        response = signed_webhook(client, {"id": "ext-404", "status": "finished"})
        assert response.status_code == 200
        assert response.json()["outcome"] == "ignored"


class TestChannelsAndUpdates:
    """Tests for OTA channel and update endpoints."""

    @pytest.fixture
    def channel(self, client, project_id):
        """A default channel."""
        response = client.post(
            "/channels",
            json={
                "project_id": project_id,
                "name": "production",
                "is_default": True,
                "runtime_version": "1.0.0",
            },
        )
        assert response.status_code == 201
        return response.json()

    def publish(self, client, channel, **overrides):
        body = {"message": "Fix crash", "change_type": "fix"}
        body.update(overrides)
        return client.post(f"/channels/{channel['id']}/updates", json=body)

    def test_channel_crud(self, client, project_id, channel):
        """Channels can be listed, fetched and deleted."""
        listed = client.get("/channels", params={"project_id": project_id}).json()
        assert [c["name"] for c in listed] == ["production"]
        assert client.get(f"/channels/{channel['id']}").status_code == 200

        duplicate = client.post("/channels", json={"project_id": project_id, "name": "production"})
        assert duplicate.status_code == 409

        assert client.delete(f"/channels/{channel['id']}").status_code == 204
        assert client.get(f"/channels/{channel['id']}").status_code == 404

    def test_channel_requires_project(self, client):
        """Listing needs a project and creation needs an existing one."""
        assert client.get("/channels").status_code == 422
        response = client.post("/channels", json={"project_id": "missing", "name": "beta"})
        assert response.status_code == 404

    def test_publish_rollout_rollback(self, client, channel, publishing_provider):
        """Publish, stage, widen and roll back through the API."""
        first = self.publish(client, channel)
        assert first.status_code == 201
        assert first.json()["version"] == 1
        assert first.json()["status"] == "active"

        second = self.publish(client, channel, rollout_percent=10).json()
        assert second["version"] == 2

        widened = client.put(f"/updates/{second['id']}/rollout", json={"rollout_percent": 100})
        assert widened.status_code == 200
        assert client.get(f"/updates/{first.json()['id']}").json()["status"] == "archived"

        rolled = client.post(f"/updates/{second['id']}/rollback")
        assert rolled.status_code == 200
        assert rolled.json()["id"] == first.json()["id"]
        assert client.get(f"/updates/{second['id']}").json()["status"] == "rolled_back"

        again = client.post(f"/updates/{second['id']}/rollback")
        assert again.status_code == 409

        listed = client.get(f"/channels/{channel['id']}/updates", params={"status": "active"})
        assert [u["version"] for u in listed.json()] == [1]

    def test_rollback_first_update(self, client, channel, publishing_provider):
        """The first update has no previous version."""
        update_id = self.publish(client, channel).json()["id"]

        response = client.post(f"/updates/{update_id}/rollback", json={})
        assert response.status_code == 409
        assert response.json()["detail"]["code"] == "no_previous_version"

    def test_publish_provider_down(self, client, channel, provider_api):
        """A provider outage returns 503 and leaves a failed version."""
        provider_api.get(url__regex=r".*/branches/.+").respond(503)

        response = self.publish(client, channel)
        assert response.status_code == 503
        assert "hint" in response.json()["detail"]

        updates = client.get(f"/channels/{channel['id']}/updates").json()
        assert [(u["version"], u["status"]) for u in updates] == [(1, "failed")]

    def test_publish_without_runtime_version(self, client, project_id, publishing_provider):
        """A channel with no runtime version and no app.json returns 400."""
        beta = client.post("/channels", json={"project_id": project_id, "name": "beta"}).json()

        response = self.publish(client, beta)
        assert response.status_code == 400
        assert response.json()["detail"]["code"] == "runtime_version_required"

        assert self.publish(client, beta, runtime_version="1.2.0").status_code == 201

    def test_publish_unknown_channel(self, client):
        """Unknown channels return 404."""
        response = client.post(
            "/channels/missing/updates", json={"message": "x", "change_type": "fix"}
        )
        assert response.status_code == 404

    def test_events_metrics_status(self, client, channel, publishing_provider):
        """Telemetry flows into metrics and status."""
        update_id = self.publish(client, channel).json()["id"]
        events = [
            {"event_type": "download_complete", "platform": "ios", "app_version": "1.0.0", "duration_ms": 120},
            {"event_type": "apply_complete", "platform": "ios", "app_version": "1.0.0", "duration_ms": 40},
            {"event_type": "apply_error", "platform": "ios", "app_version": "1.0.0", "error": "Hash mismatch"},
        ]
        for event in events:
            response = client.post(f"/updates/{update_id}/events", json=event)
            assert response.status_code == 201

        metrics = client.get(f"/updates/{update_id}/metrics").json()
        assert metrics[0]["success_count"] == 1
        assert metrics[0]["failure_count"] == 1
        assert metrics[0]["success_rate"] == 0.5

        status = client.get(f"/updates/{update_id}/status").json()
        assert status["update"]["download_count"] == 1
        assert status["recent_errors"] == [{"message": "Hash mismatch", "count": 1}]

    def test_invalid_event(self, client, channel, publishing_provider):
        """Unknown event types and negative durations are rejected."""
        update_id = self.publish(client, channel).json()["id"]

        bad_type = {"event_type": "exploded", "platform": "ios", "app_version": "1"}
        bad_duration = {"event_type": "apply_start", "platform": "ios", "app_version": "1", "duration_ms": -1}
        assert client.post(f"/updates/{update_id}/events", json=bad_type).status_code == 422
        assert client.post(f"/updates/{update_id}/events", json=bad_duration).status_code == 422

    def test_resolve(self, client, channel, publishing_provider):
        """A device resolves to the active update."""
        update_id = self.publish(client, channel).json()["id"]

        response = client.get(
            f"/channels/{channel['id']}/resolve", params={"device_id": "device-1", "platform": "ios"}
        )
        assert response.status_code == 200
        assert response.json()["update"]["id"] == update_id

    def test_update_not_found(self, client):
        """Unknown updates return 404 on every route."""
        assert client.get("/updates/missing").status_code == 404
        assert client.get("/updates/missing/metrics").status_code == 404
        assert client.get("/updates/missing/status").status_code == 404
        assert client.put("/updates/missing/rollout", json={"rollout_percent": 5}).status_code == 404
        assert client.post("/updates/missing/rollback").status_code == 404
