"""Integration tests for the /gitlab routes."""
from datetime import datetime

import pytest
from fastapi.testclient import TestClient

from codetrack.api.deps import get_client, get_db_engine, get_token_vault
from codetrack.api.main import create_app
from codetrack.gitlab.errors import GitLabAuthError, GitLabNotFoundError

from fakes import FakeGitLab, make_commit, make_project

USER = {"X-User-Id": "user-1"}


@pytest.fixture(name="gitlab")
def gitlab_fixture():
    return FakeGitLab(
        projects=[make_project(1, "api"), make_project(2, "web")],
        commits={
            1: [make_commit("a1"), make_commit("a2"), make_commit("a3", days_ago=2)],
            2: [make_commit("b1", author_name="Bob", author_email="bob@example.com")],
        },
    )


@pytest.fixture(name="client")
def client_fixture(engine, vault, gitlab):
    app = create_app()
    app.dependency_overrides[get_db_engine] = lambda: engine
    app.dependency_overrides[get_client] = lambda: gitlab
    app.dependency_overrides[get_token_vault] = lambda: vault
    with TestClient(app) as c:
        yield c


@pytest.fixture
def connected(client):
    resp = client.post(
        "/gitlab/connect-token",
        json={"personalAccessToken": "glpat-secret", "gitlabUsername": "alice"},
        headers=USER,
    )
    assert resp.status_code == 200
    return resp


class TestAuth:
    @pytest.mark.parametrize("method, path", [
        ("get", "/gitlab/status"),
        ("post", "/gitlab/sync"),
        ("get", "/gitlab/analytics"),
        ("post", "/gitlab/disconnect"),
        ("post", "/gitlab/connect-token"),
    ])
    def test_requires_user(self, client, method, path):
        resp = getattr(client, method)(path)
        assert resp.status_code == 401

    def test_blank_user_rejected(self, client):
        assert client.get("/gitlab/status", headers={"X-User-Id": "  "}).status_code == 401


# ─── Connect ─────────────────────────────────────────────────────────────────

class TestConnectToken:
    def test_success(self, connected):
        body = connected.json()
        assert body["success"] is True
        assert body["integration"]["username"] == "alice"
        assert body["integration"]["repositoriesCount"] == 2
        assert body["integration"]["connectedAt"]

    def test_token_stored_encrypted(self, connected, store, vault):
        saved = store.get_by_user("user-1")
        assert saved.access_token != "glpat-secret"
        assert vault.decrypt(saved.access_token) == "glpat-secret"

    def test_username_mismatch(self, client, store):
        resp = client.post(
            "/gitlab/connect-token",
            json={"personalAccessToken": "glpat-secret", "gitlabUsername": "mallory"},
            headers=USER,
        )
        assert resp.status_code == 400
        assert "does not match" in resp.json()["error"]
        assert store.get_by_user("user-1") is None

    def test_missing_fields(self, client):
        resp = client.post("/gitlab/connect-token", json={}, headers=USER)
        assert resp.status_code == 400

    def test_invalid_token(self, client, gitlab):
        gitlab.failures["user"] = [GitLabAuthError("401", status=401)]
        resp = client.post(
            "/gitlab/connect-token",
            json={"personalAccessToken": "bad", "gitlabUsername": "alice"},
            headers=USER,
        )
        assert resp.status_code == 400
        assert "Invalid Personal Access Token" in resp.json()["error"]

    def test_repository_filter(self, client, store):
        client.post(
            "/gitlab/connect-token",
            json={"personalAccessToken": "glpat", "gitlabUsername": "alice", "repositories": "web"},
            headers=USER,
        )
        repos = client.get("/gitlab/repositories", headers=USER).json()["repositories"]
        assert {r["name"]: r["isTracked"] for r in repos} == {"api": False, "web": True}


class TestOAuthConnect:
    def test_connects_and_syncs(self, client, store):
        resp = client.post(
            "/gitlab/oauth-connect",
            headers={
                **USER,
                "X-GitLab-Access-Token": "oauth-access",
                "X-GitLab-Refresh-Token": "oauth-refresh",
                "X-GitLab-Token-Expires": "1900000000",
            },
        )
        assert resp.status_code == 200
        body = resp.json()
        assert body["warning"] is None
        assert body["integration"]["username"] == "alice"
        assert body["integration"]["lastSyncAt"]
        assert store.count_activities("user-1") == 3
        assert store.get_by_user("user-1").token_type.value == "oauth"

    def test_missing_token(self, client):
        resp = client.post("/gitlab/oauth-connect", headers=USER)
        assert resp.status_code == 400
        assert "sign in with GitLab" in resp.json()["error"]

    def test_bad_expiry(self, client):
        resp = client.post(
            "/gitlab/oauth-connect",
            headers={**USER, "X-GitLab-Access-Token": "a", "X-GitLab-Token-Expires": "soon"},
        )
        assert resp.status_code == 400

    def test_initial_sync_failure_is_a_warning(self, client, gitlab, store):
        # First failure hits the repository fetch during connect, the second the sync
        gitlab.failures["projects"] = [
            GitLabAuthError("401", status=401),
            GitLabAuthError("401", status=401),
        ]
        resp = client.post(
            "/gitlab/oauth-connect",
            headers={**USER, "X-GitLab-Access-Token": "oauth-access"},
        )
        assert resp.status_code == 200
        assert resp.json()["warning"] == "Initial sync failed. Please try syncing manually."
        assert store.get_by_user("user-1") is not None


class TestTestConnection:
    def test_connected(self, client, connected):
        resp = client.get("/gitlab/test-connection", headers=USER)
        assert resp.status_code == 200
        assert resp.json()["success"] is True
        assert resp.json()["user"]["username"] == "alice"

    def test_not_connected(self, client):
        resp = client.get("/gitlab/test-connection", headers=USER)
        assert resp.status_code == 401
        assert resp.json() == {"error": "GitLab not connected", "connected": False}


class TestUpdateApiBase:
    def test_persists_and_used_by_later_calls(self, client, connected, store, gitlab):
        resp = client.post(
            "/gitlab/update-api-base",
            json={"apiBase": "https://gitlab.internal.example/api/v4/"},
            headers=USER,
        )
        assert resp.status_code == 200
        assert resp.json()["apiBase"] == "https://gitlab.internal.example/api/v4"
        assert store.get_by_user("user-1").api_base == "https://gitlab.internal.example/api/v4"

        gitlab.api_bases.clear()
        client.post("/gitlab/sync", headers=USER)
        client.get("/gitlab/test-connection", headers=USER)
        assert set(gitlab.api_bases) == {"https://gitlab.internal.example/api/v4"}

    def test_invalid_url(self, client, connected, store):
        before = store.get_by_user("user-1").api_base
        resp = client.post("/gitlab/update-api-base", json={"apiBase": "not a url"}, headers=USER)
        assert resp.status_code == 422
        assert store.get_by_user("user-1").api_base == before

    def test_missing_url(self, client, connected):
        assert client.post("/gitlab/update-api-base", json={}, headers=USER).status_code == 422

    def test_not_connected(self, client):
        resp = client.post(
            "/gitlab/update-api-base",
            json={"apiBase": "https://gitlab.internal.example/api/v4"},
            headers=USER,
        )
        assert resp.status_code == 401
        assert resp.json()["connected"] is False

    def test_reconnect_resets_to_default(self, client, connected, store):
        default = store.get_by_user("user-1").api_base
        client.post(
            "/gitlab/update-api-base",
            json={"apiBase": "https://gitlab.internal.example/api/v4"},
            headers=USER,
        )
        client.post(
            "/gitlab/connect-token",
            json={"personalAccessToken": "glpat-secret", "gitlabUsername": "alice"},
            headers=USER,
        )
        assert store.get_by_user("user-1").api_base == default


# ─── Sync and status ─────────────────────────────────────────────────────────

class TestSync:
    def test_incremental(self, client, connected):
        resp = client.post("/gitlab/sync", headers=USER)
        assert resp.status_code == 200
        results = resp.json()["syncResults"]
        assert results["mode"] == "incremental"
        assert results["state"] == "completed"
        assert results["projectsScanned"] == 2
        assert results["commitsProcessed"] == 4
        assert results["commitsMatched"] == 3
        assert results["newRecords"] == 3
        assert results["errors"] == []

    def test_custom_days(self, client, connected):
        resp = client.post("/gitlab/sync?days=7", headers=USER)
        assert resp.json()["syncResults"]["mode"] == "custom"

    def test_full(self, client, connected):
        resp = client.post("/gitlab/sync?fullSync=true", headers=USER)
        assert resp.json()["syncResults"]["mode"] == "full"

    def test_invalid_days(self, client, connected):
        assert client.post("/gitlab/sync?days=0", headers=USER).status_code == 422

    def test_not_connected(self, client):
        resp = client.post("/gitlab/sync", headers=USER)
        assert resp.status_code == 401
        assert resp.json()["connected"] is False

    def test_already_running(self, client, connected, store):
        assert store.claim_sync("user-1", now=datetime.utcnow(), stale_after=3600)
        resp = client.post("/gitlab/sync", headers=USER)
        assert resp.status_code == 409
        assert store.count_activities("user-1") == 0

    def test_corrupt_token_requires_reconnect(self, client, make_integration):
        make_integration(access_token_ciphertext="garbage")
        resp = client.post("/gitlab/sync", headers=USER)
        assert resp.status_code == 401
        assert resp.json()["reconnect_required"] is True

    def test_gitlab_failure(self, client, connected, gitlab):
        gitlab.failures["projects"] = [GitLabAuthError("401 Unauthorized", status=401)]
        resp = client.post("/gitlab/sync", headers=USER)
        assert resp.status_code == 502
        assert resp.json()["error_type"] == "auth"


class TestStatus:
    def test_not_connected(self, client):
        resp = client.get("/gitlab/status", headers=USER)
        assert resp.status_code == 200
        assert resp.json() == {"connected": False}

    def test_before_first_sync(self, client, connected):
        body = client.get("/gitlab/status", headers=USER).json()
        assert body["connected"] is True
        assert body["username"] == "alice"
        assert body["tokenType"] == "personal_access_token"
        assert body["lastSyncAt"] is None
        assert body["lastSyncStatus"] == "never_run"
        assert body["repositoryCount"] == 2

    def test_after_sync(self, client, connected):
        client.post("/gitlab/sync", headers=USER)
        body = client.get("/gitlab/status", headers=USER).json()
        assert body["lastSyncStatus"] == "success"
        assert body["lastSyncAt"] is not None
        assert body["activityCounts"] == {"commits": 3, "issues": 0, "mergeRequests": 0}
        assert body["trackedRepositoryCount"] == 2
        assert body["recentErrors"] == []

    def test_recent_errors(self, client, connected, gitlab):
        gitlab.failures["projects"] = [GitLabAuthError("401 Unauthorized", status=401)]
        client.post("/gitlab/sync", headers=USER)
        body = client.get("/gitlab/status", headers=USER).json()
        assert body["lastSyncStatus"] == "error"
        assert len(body["recentErrors"]) == 1
        assert body["recentErrors"][0]["message"].startswith("Sync failed")


# ─── Analytics ───────────────────────────────────────────────────────────────

class TestAnalytics:
    def test_not_connected(self, client):
        resp = client.get("/gitlab/analytics", headers=USER)
        assert resp.status_code == 401

    def test_after_sync(self, client, connected):
        client.post("/gitlab/sync", headers=USER)
        body = client.get("/gitlab/analytics", headers=USER).json()
        assert body["success"] is True
        assert body["username"] == "alice"
        assert body["period"]["days"] == 90
        assert body["summary"]["totalCommits"] == 3
        assert body["summary"]["activeRepositories"] == 1
        assert len(body["commitHeatmap"]) == 90
        assert len(body["recentCommits"]) == 3
        assert body["stats"] is None

    def test_include_stats(self, client, connected):
        client.post("/gitlab/sync", headers=USER)
        body = client.get("/gitlab/analytics?days=30&includeStats=true", headers=USER).json()
        assert body["period"]["days"] == 30
        assert set(body["stats"]) >= {"commitsByHour", "productivityScore", "qualityScore"}

    def test_invalid_days(self, client, connected):
        assert client.get("/gitlab/analytics?days=0", headers=USER).status_code == 422


# ─── Live insights ───────────────────────────────────────────────────────────

def _mr(mr_id, state):
    return {
        "id": mr_id,
        "iid": mr_id % 100,
        "project_id": 1,
        "title": f"MR {mr_id}",
        "state": state,
        "source_branch": "feature",
        "target_branch": "main",
        "created_at": "2026-01-02T10:00:00Z",
        "updated_at": "2026-01-03T10:00:00Z",
        "merged_at": "2026-01-03T10:00:00Z" if state == "merged" else None,
        "user_notes_count": 2,
        "upvotes": 1,
        "downvotes": 0,
        "web_url": f"https://gitlab.test/team/api/-/merge_requests/{mr_id % 100}",
    }


class TestMergeRequests:
    def test_lists_authored(self, client, connected, gitlab):
        gitlab.merge_requests = [_mr(701, "merged"), _mr(702, "opened")]
        resp = client.get("/gitlab/merge-requests?state=merged&limit=20", headers=USER)
        assert resp.status_code == 200
        body = resp.json()
        assert body["success"] is True
        assert body["total"] == 2
        assert body["mergeRequests"][0] == {
            "id": 701,
            "iid": 1,
            "projectId": 1,
            "title": "MR 701",
            "state": "merged",
            "sourceBranch": "feature",
            "targetBranch": "main",
            "createdAt": "2026-01-02T10:00:00Z",
            "updatedAt": "2026-01-03T10:00:00Z",
            "mergedAt": "2026-01-03T10:00:00Z",
            "userNotesCount": 2,
            "upvotes": 1,
            "downvotes": 0,
            "webUrl": "https://gitlab.test/team/api/-/merge_requests/1",
        }
        assert gitlab.calls[-1] == ("merge_requests", "merged", 1, None)

    def test_invalid_state(self, client, connected):
        assert client.get("/gitlab/merge-requests?state=draft", headers=USER).status_code == 422

    def test_limit_bounds(self, client, connected):
        assert client.get("/gitlab/merge-requests?limit=0", headers=USER).status_code == 422
        assert client.get("/gitlab/merge-requests?limit=101", headers=USER).status_code == 422

    def test_not_connected(self, client):
        assert client.get("/gitlab/merge-requests", headers=USER).status_code == 401

    def test_gitlab_failure(self, client, connected, gitlab):
        gitlab.failures["merge_requests"] = [GitLabAuthError("401 Unauthorized", status=401)]
        resp = client.get("/gitlab/merge-requests", headers=USER)
        assert resp.status_code == 502


class TestLanguages:
    def test_breakdown(self, client, connected, gitlab):
        gitlab.languages = {1: {"Python": 80.0, "Shell": 20.0}, 2: {"TypeScript": 60.0, "Python": 40.0}}
        resp = client.get("/gitlab/languages", headers=USER)
        assert resp.status_code == 200
        body = resp.json()
        assert body["success"] is True
        assert body["primaryLanguage"] == "Python"
        assert body["totalLanguages"] == 3
        assert body["projectsAnalyzed"] == 2
        assert body["languages"] == [
            {"language": "Python", "percentage": 60.0},
            {"language": "TypeScript", "percentage": 30.0},
            {"language": "Shell", "percentage": 10.0},
        ]
        assert body["skippedProjects"] == []

    def test_unreadable_project_skipped(self, client, connected, gitlab):
        gitlab.languages = {1: {"Python": 100.0}}
        gitlab.failures[("languages", 2)] = [GitLabNotFoundError("404 Project Not Found", status=404)]
        body = client.get("/gitlab/languages", headers=USER).json()
        assert body["projectsAnalyzed"] == 1
        assert body["languages"] == [{"language": "Python", "percentage": 100.0}]
        assert body["skippedProjects"] == ["web"]

    def test_not_connected(self, client):
        assert client.get("/gitlab/languages", headers=USER).status_code == 401


# ─── Disconnect ──────────────────────────────────────────────────────────────

class TestDisconnect:
    def test_removes_everything(self, client, connected, store):
        client.post("/gitlab/sync", headers=USER)
        resp = client.post("/gitlab/disconnect", headers=USER)
        assert resp.status_code == 200
        assert resp.json()["deleted"] == {"repositories": 2, "sync_errors": 0, "activities": 3}
        assert client.get("/gitlab/status", headers=USER).json() == {"connected": False}
        assert store.count_activities("user-1") == 0

    def test_not_connected(self, client):
        assert client.post("/gitlab/disconnect", headers=USER).status_code == 404
