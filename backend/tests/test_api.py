"""HTTP API tests against the fully wired runtime."""

import asyncio
import json

import pytest

from conftest import TEST_USER_ID, make_settings, seed_workflow, workflow_document
from core.webhook_signing import sign_webhook_payload


def _webhook_document(secret=None) -> dict:
    config = {"secret": secret} if secret else {}
    return workflow_document(
        name="Webhook Workflow",
        trigger={"type": "webhook", "config": config},
        steps=[{
            "id": "shout",
            "module": "utilities.string.toUpperCase",
            "inputs": {"text": "{{trigger.body.text}}"},
            "outputAs": "shouted",
        }],
    )


class TestHealth:
    @pytest.mark.asyncio
    async def test_health_check(self, client):
        response = await client.get("/api/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["checks"]["database"] == "ok"
        assert data["checks"]["queue"] == "direct"

    @pytest.mark.asyncio
    async def test_request_id_is_echoed(self, client):
        response = await client.get("/api/health", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"
        assert "X-Process-Time" in response.headers


class TestWorkflowEndpoints:
    """Import, validate, export, list and enable."""

    @pytest.mark.asyncio
    async def test_import_requires_user(self, client):
        response = await client.post("/api/v1/workflows/import", json=workflow_document())
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_import_reports_corrections(self, client, user_headers):
        document = workflow_document(steps=[{
            "id": "parse", "module": "utilities.json.parseJson",
            "inputs": {"json": "{{trigger.text}}"}, "outputAs": "shouted",
        }])
        response = await client.post("/api/v1/workflows/import", json=document, headers=user_headers)
        assert response.status_code == 201
        data = response.json()
        assert data["trigger_type"] == "manual"
        assert data["is_enabled"] is True
        assert len(data["changes"]) == 2

        stored = await client.get(f"/api/v1/workflows/{data['id']}")
        assert stored.json()["document"]["config"]["steps"][0]["module"] == "utilities.json.parse"
        assert stored.json()["user_id"] == TEST_USER_ID

    @pytest.mark.asyncio
    async def test_invalid_import_lists_issues(self, client, user_headers):
        document = workflow_document(steps=[{"id": "x", "module": "utilities.math.add", "inputs": {"a": 1}}])
        response = await client.post("/api/v1/workflows/import", json=document, headers=user_headers)
        assert response.status_code == 422
        assert "step 'x': missing required parameter 'b'" in response.json()["issues"]

    @pytest.mark.asyncio
    async def test_validate_dry_run(self, client):
        document = workflow_document(steps=[{
            "id": "up", "module": "utilities.string.toUpperCase",
            "inputs": {"text": "{{credential.openai}}"}, "outputAs": "shouted",
        }])
        response = await client.post("/api/v1/workflows/validate", json=document)
        assert response.json() == {"valid": True, "issues": [], "changes": [], "credentials": ["openai"]}

        response = await client.post("/api/v1/workflows/validate", json={"config": {}})
        assert response.json()["valid"] is False

    @pytest.mark.asyncio
    async def test_export_redacts_secret(self, client, runtime):
        workflow = await seed_workflow(runtime, _webhook_document(secret="s3cret"))
        response = await client.get(f"/api/v1/workflows/{workflow.id}/export")
        assert response.json()["trigger"]["config"]["secret"] == "********"

    @pytest.mark.asyncio
    async def test_list_and_toggle(self, client, test_workflow, user_headers):
        response = await client.get("/api/v1/workflows", headers=user_headers)
        assert response.json()["total"] == 1

        response = await client.post(f"/api/v1/workflows/{test_workflow.id}/disable")
        assert response.json()["is_enabled"] is False
        response = await client.post(f"/api/v1/workflows/{test_workflow.id}/enable")
        assert response.json()["is_enabled"] is True

    @pytest.mark.asyncio
    async def test_unknown_workflow(self, client):
        response = await client.get("/api/v1/workflows/does-not-exist")
        assert response.status_code == 404
        assert "request_id" in response.json()

    @pytest.mark.asyncio
    async def test_webhook_get_describes_without_running(self, client, runtime, monkeypatch):
        enqueued = []
        real_enqueue = runtime.queue.enqueue

        async def spy(job):
            enqueued.append(job)
            return await real_enqueue(job)

        monkeypatch.setattr(runtime.queue, "enqueue", spy)
        workflow = await seed_workflow(runtime, _webhook_document(secret="s3cret"))

        response = await client.get(f"/api/v1/workflows/{workflow.id}/webhook")
        assert response.status_code == 200
        data = response.json()
        assert data["active"] is True
        assert data["signed"] is True
        assert data["trigger_type"] == "webhook"
        assert data["url"].endswith(f"/api/v1/workflows/{workflow.id}/webhook")
        assert enqueued == []

    @pytest.mark.asyncio
    async def test_webhook_get_reports_inactive(self, client, runtime, test_workflow):
        disabled = await seed_workflow(runtime, _webhook_document(), enabled=False)
        data = (await client.get(f"/api/v1/workflows/{disabled.id}/webhook")).json()
        assert data["active"] is False
        assert data["signed"] is False

        manual = (await client.get(f"/api/v1/workflows/{test_workflow.id}/webhook")).json()
        assert manual["trigger_type"] == "manual"
        assert manual["active"] is False

    @pytest.mark.asyncio
    async def test_delete(self, client, test_workflow):
        assert (await client.delete(f"/api/v1/workflows/{test_workflow.id}")).status_code == 204
        assert (await client.get(f"/api/v1/workflows/{test_workflow.id}")).status_code == 404


class TestDirectExecution:
    """Without a queue backend, triggers run the workflow in the request."""

    @pytest.mark.asyncio
    async def test_execute_returns_result(self, client, test_workflow, user_headers):
        response = await client.post(
            f"/api/v1/workflows/{test_workflow.id}/execute",
            json={"input": {"text": "hi"}},
            headers=user_headers,
        )
        assert response.status_code == 200
        data = response.json()
        assert data["job_id"] == "direct-execution"
        assert data["queued"] is False
        assert data["result"]["success"] is True
        assert data["result"]["return_value"] == "HI"

    @pytest.mark.asyncio
    async def test_failed_step_comes_back_in_result(self, client, test_workflow):
        response = await client.post(f"/api/v1/workflows/{test_workflow.id}/execute", json={"input": {}})
        result = response.json()["result"]
        assert result["success"] is False
        assert result["failed_step_id"] == "shout"

    @pytest.mark.asyncio
    async def test_missing_credential_is_rejected(self, client, runtime):
        workflow = await seed_workflow(runtime, workflow_document(steps=[{
            "id": "shout", "module": "utilities.string.toUpperCase",
            "inputs": {"text": "{{credential.openai}}"}, "outputAs": "shouted",
        }]))
        response = await client.post(f"/api/v1/workflows/{workflow.id}/execute", json={})
        assert response.status_code == 404
        assert "openai" in response.json()["detail"]

    @pytest.mark.asyncio
    async def test_stored_credential_is_used(self, client, runtime, user_headers):
        workflow = await seed_workflow(runtime, workflow_document(steps=[{
            "id": "shout", "module": "utilities.string.toUpperCase",
            "inputs": {"text": "{{credential.openai}}"}, "outputAs": "shouted",
        }]))
        stored = await client.put("/api/v1/credentials/openai", json={"value": "sk-abc"}, headers=user_headers)
        assert stored.status_code == 204

        response = await client.post(f"/api/v1/workflows/{workflow.id}/execute", json={}, headers=user_headers)
        assert response.json()["result"]["return_value"] == "SK-ABC"

    @pytest.mark.asyncio
    async def test_signed_webhook(self, client, runtime):
        workflow = await seed_workflow(runtime, _webhook_document(secret="s3cret"))
        body = json.dumps({"text": "hook"}).encode()

        response = await client.post(
            f"/api/v1/workflows/{workflow.id}/webhook",
            content=body,
            headers=sign_webhook_payload(body, "s3cret"),
        )
        assert response.status_code == 200
        assert response.json()["queued"] is False
        assert response.json()["result"]["return_value"] == "HOOK"

    @pytest.mark.asyncio
    async def test_unsigned_webhook_rejected(self, client, runtime):
        workflow = await seed_workflow(runtime, _webhook_document(secret="s3cret"))
        response = await client.post(f"/api/v1/workflows/{workflow.id}/webhook", json={"text": "hook"})
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_webhook_on_disabled_workflow(self, client, runtime):
        workflow = await seed_workflow(runtime, _webhook_document(), enabled=False)
        response = await client.post(f"/api/v1/workflows/{workflow.id}/webhook", json={"text": "x"})
        assert response.status_code == 409

    @pytest.mark.asyncio
    async def test_chat(self, client, runtime):
        workflow = await seed_workflow(runtime, workflow_document(
            trigger={"type": "chat", "config": {}},
            steps=[{"id": "shout", "module": "utilities.string.toUpperCase",
                    "inputs": {"text": "{{trigger.userInput}}"}, "outputAs": "shouted"}],
        ))
        response = await client.post(f"/api/v1/workflows/{workflow.id}/chat", json={"message": "hello"})
        assert response.json()["result"]["return_value"] == "HELLO"

    @pytest.mark.asyncio
    async def test_telegram_bot(self, client, runtime):
        workflow = await seed_workflow(runtime, workflow_document(
            trigger={"type": "messaging-bot", "config": {"platform": "telegram", "secretToken": "tok"}},
            steps=[{"id": "shout", "module": "utilities.string.toUpperCase",
                    "inputs": {"text": "{{trigger.text}}"}, "outputAs": "shouted"}],
        ))
        update = {"message": {"message_id": 1, "text": "ping", "chat": {"id": 9}, "from": {"id": 2}}}

        rejected = await client.post(f"/api/v1/workflows/{workflow.id}/bot/telegram", json=update)
        assert rejected.status_code == 401

        response = await client.post(
            f"/api/v1/workflows/{workflow.id}/bot/telegram",
            json=update,
            headers={"X-Telegram-Bot-Api-Secret-Token": "tok"},
        )
        assert response.json()["result"]["return_value"] == "PING"


class TestQueuedExecution:
    """With the local worker pool, triggers only enqueue."""

    @pytest.fixture
    def settings(self):
        return make_settings(QUEUE_BACKEND="local")

    @pytest.mark.asyncio
    async def test_execute_enqueues_and_job_completes(self, client, runtime, test_workflow):
        response = await client.post(
            f"/api/v1/workflows/{test_workflow.id}/execute", json={"input": {"text": "queued"}}
        )
        data = response.json()
        assert data["queued"] is True
        assert data["result"] is None

        job = None
        for _ in range(100):
            job = (await client.get(f"/api/v1/queue/jobs/{data['job_id']}")).json()
            if job["status"] == "completed":
                break
            await asyncio.sleep(0.02)
        assert job["status"] == "completed"
        assert job["result"]["return_value"] == "QUEUED"

        stats = (await client.get("/api/v1/queue/stats")).json()
        assert stats["mode"] == "WorkerPool"
        assert stats["completed"] == 1

    @pytest.mark.asyncio
    async def test_signed_webhook_is_queued(self, client, runtime):
        workflow = await seed_workflow(runtime, _webhook_document(secret="s3cret"))
        body = b'{"text": "later"}'
        response = await client.post(
            f"/api/v1/workflows/{workflow.id}/webhook",
            content=body,
            headers=sign_webhook_payload(body, "s3cret"),
        )
        assert response.status_code == 200
        assert response.json()["queued"] is True

    @pytest.mark.asyncio
    async def test_unknown_job(self, client):
        assert (await client.get("/api/v1/queue/jobs/nope")).status_code == 404


class TestCatalogAndOperations:
    """Capabilities, scheduler, credentials and storage endpoints."""

    @pytest.mark.asyncio
    async def test_capability_catalog(self, client):
        data = (await client.get("/api/v1/capabilities")).json()
        assert data["count"] > 0
        assert "utilities" in data["categories"]
        assert data["aliases"]["utilities.json.parseJson"] == "utilities.json.parse"

        only = (await client.get("/api/v1/capabilities", params={"category": "utilities"})).json()
        assert set(only["categories"]) == {"utilities"}

    @pytest.mark.asyncio
    async def test_resilience_status(self, client):
        data = (await client.get("/api/v1/capabilities/resilience")).json()
        assert data == {"circuits": {}, "rate_limits": {}}

    @pytest.mark.asyncio
    async def test_capability_usage(self, client, runtime):
        assert (await client.get("/api/v1/capabilities/usage")).json() == {"usage": {}}

        await runtime.usage.record("web.http.request")
        data = (await client.get("/api/v1/capabilities/usage", params={"capability": "web.http.request"})).json()
        assert data["usage"]["web.http.request"]["last_15_minutes"]["count"] == 1
        assert set(data["usage"]["web.http.request"]) == {
            "last_15_minutes", "last_hour", "last_24_hours", "last_month",
        }

    @pytest.mark.asyncio
    async def test_scheduler_jobs(self, client, runtime):
        workflow = await seed_workflow(runtime, workflow_document(
            trigger={"type": "cron", "config": {"schedule": "0 6 * * *"}},
        ))
        data = (await client.get("/api/v1/scheduler/jobs")).json()
        names = [job["name"] for job in data["jobs"]]
        assert f"workflow:{workflow.id}" in names
        assert "maintenance:storage-cleanup" in names

        stopped = await client.post(f"/api/v1/scheduler/jobs/workflow:{workflow.id}/stop")
        assert stopped.json()["enabled"] is False

        ran = await client.post("/api/v1/scheduler/jobs/maintenance:storage-cleanup/run")
        assert ran.json()["run_count"] == 1

        assert (await client.post("/api/v1/scheduler/jobs/ghost/run")).status_code == 404

    @pytest.mark.asyncio
    async def test_credentials_never_return_values(self, client, user_headers):
        await client.put("/api/v1/credentials/slack", json={"value": {"token": "xoxb"}}, headers=user_headers)
        data = (await client.get("/api/v1/credentials", headers=user_headers)).json()
        assert [c["key"] for c in data["credentials"]] == ["slack"]
        assert "xoxb" not in json.dumps(data)

        assert (await client.delete("/api/v1/credentials/slack", headers=user_headers)).status_code == 204
        assert (await client.delete("/api/v1/credentials/slack", headers=user_headers)).status_code == 404

    @pytest.mark.asyncio
    async def test_organization_credentials_need_org_header(self, client):
        response = await client.put(
            "/api/v1/credentials/openai",
            json={"value": "sk", "scope": "organization"},
            headers={"X-User-ID": TEST_USER_ID},
        )
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_storage_tables(self, client, runtime):
        await runtime.storage.insert_many("wf-9", "seen", [{"id": 1}, {"id": 2}])

        tables = (await client.get("/api/v1/storage/wf-9/tables")).json()
        assert tables == {"tables": [{"table": "seen", "columns": ["id"]}]}

        rows = (await client.get("/api/v1/storage/wf-9/tables/seen", params={"limit": 1})).json()
        assert rows["count"] == 1

        assert (await client.delete("/api/v1/storage/wf-9/tables/seen")).status_code == 204
        assert (await client.delete("/api/v1/storage/wf-9/tables/seen")).status_code == 404
