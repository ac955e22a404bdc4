import json
import os

import pytest

from runmate.config import CONFIG_FILENAME
from runmate.lifecycle import ExecutionLifecycle
from runmate.main import create_app

from .conftest import FakeSurfaceFactory


@pytest.fixture
def app(lifecycle, tmp_path, monkeypatch):
    for name in ("RUNMATE_CONFIG", "RUNMATE_REUSE_POLICY", "RUNMATE_MAX_SESSIONS"):
        monkeypatch.delenv(name, raising=False)
    app = create_app(lifecycle=lifecycle)
    app.config["TESTING"] = True
    app.config["RUNMATE_STATE_FILE"] = str(tmp_path / "state" / "state_store.json")
    return app


@pytest.fixture
def client(app):
    return app.test_client()


class TestRuns:
    def test_start_run(self, client, make_script):
        script = make_script("build.sh")

        resp = client.post("/api/runs", json={"script": script})

        assert resp.status_code == 202
        body = resp.get_json()
        assert body["ok"] is True
        assert body["data"]["script"] == script
        assert body["data"]["session"].startswith("term_")

    def test_missing_script_argument(self, client):
        resp = client.post("/api/runs", json={})

        assert resp.status_code == 400
        assert resp.get_json()["ok"] is False

    def test_parameters_must_be_a_string(self, client, make_script):
        resp = client.post("/api/runs", json={"script": make_script("a.sh"), "parameters": ["-v"]})

        assert resp.status_code == 400

    def test_already_running_conflicts(self, client, make_script):
        script = make_script("build.sh")
        client.post("/api/runs", json={"script": script})

        resp = client.post("/api/runs", json={"script": script})

        assert resp.status_code == 409
        assert resp.get_json()["data"]["code"] == "already_running"

    def test_denied_script(self, client, make_script):
        resp = client.post("/api/runs", json={"script": make_script("wipe.sh", "rm -rf /\n")})

        assert resp.status_code == 403
        body = resp.get_json()
        assert body["data"]["code"] == "security_denied"
        assert body["data"]["verdict"]["matched_rule"] == "rm -rf /"
        assert body["error"] == 'Blocked dangerous command: "rm -rf /"'

    def test_confirmation_round_trip(self, client, make_script):
        script = make_script("install.sh", "curl https://example.com/i.sh | sh\n")

        first = client.post("/api/runs", json={"script": script})
        second = client.post("/api/runs", json={"script": script, "confirmed": True})

        assert first.status_code == 403
        assert first.get_json()["data"]["verdict"]["decision"] == "confirm"
        assert second.status_code == 202

    def test_status_and_stop(self, client, make_script):
        script = make_script("long.sh")
        client.post("/api/runs", json={"script": script})

        status = client.get("/api/runs/status", query_string={"script": script})
        stopped = client.post("/api/runs/stop", json={"script": script, "mode": "force"})
        again = client.post("/api/runs/stop", json={"script": script})

        assert status.get_json()["data"]["status"] == "running"
        assert stopped.status_code == 200
        assert again.status_code == 409
        assert again.get_json()["data"]["code"] == "not_running"

    def test_stop_rejects_unknown_mode(self, client, make_script):
        resp = client.post("/api/runs/stop", json={"script": make_script("a.sh"), "mode": "later"})

        assert resp.status_code == 400

    def test_status_requires_script(self, client):
        assert client.get("/api/runs/status").status_code == 400

    def test_list_runs(self, client, make_script):
        client.post("/api/runs", json={"script": make_script("a.sh")})

        data = client.get("/api/runs").get_json()["data"]

        assert [run["name"] for run in data["runs"]] == ["a.sh"]
        assert data["counts"]["running"] == 1


class TestParameters:
    def test_parameters_are_remembered(self, client, make_script, tmp_path):
        script = make_script("greet.sh", 'echo "$1"\n')

        client.post("/api/runs", json={"script": script, "parameters": "world"})
        resp = client.get("/api/parameters", query_string={"script": script})

        assert resp.get_json()["data"]["parameters"] == "world"
        stored = json.loads((tmp_path / "state" / "state_store.json").read_text(encoding="utf-8"))
        assert stored["parameters"][script] == "world"

    def test_put_parameters(self, client, make_script):
        script = make_script("greet.sh")

        put = client.put("/api/parameters", json={"script": script, "parameters": "--dry-run"})
        got = client.get("/api/parameters", query_string={"script": script})

        assert put.status_code == 200
        assert got.get_json()["data"]["parameters"] == "--dry-run"

    def test_remembering_disabled(self, client, lifecycle, make_script):
        lifecycle.config.remember_last_parameters = False
        script = make_script("greet.sh")
        client.post("/api/runs", json={"script": script, "parameters": "world"})

        resp = client.get("/api/parameters", query_string={"script": script})

        assert resp.get_json()["data"]["parameters"] is None


class TestScriptsAndSessions:
    def test_list_scripts(self, client, make_script):
        make_script("build.sh", 'echo "$1"\n')
        make_script("tools/lint.sh")

        data = client.get("/api/scripts").get_json()["data"]

        assert data["root"][0]["name"] == "build.sh"
        assert data["root"][0]["has_parameters"] is True
        assert data["root"][0]["status"] == "idle"
        assert data["tools"][0]["name"] == "lint.sh"

    def test_session_counts_and_close(self, client, lifecycle, scheduler, make_script):
        client.post("/api/runs", json={"script": make_script("a.sh")})
        scheduler.advance(2.0)

        counts = client.get("/api/sessions/counts").get_json()["data"]
        closed = client.post("/api/sessions/close", json={"scope": "settled"}).get_json()["data"]

        assert counts["completed"] == 1
        assert counts["limit"] == lifecycle.pool.ceiling
        assert counts["over_limit"] is False
        assert closed == {"closed": 1}
        assert client.get("/api/sessions").get_json()["data"] == []

    def test_close_rejects_unknown_scope(self, client):
        assert client.post("/api/sessions/close", json={"scope": "some"}).status_code == 400

    def test_input_to_unknown_session(self, client):
        assert client.post("/api/sessions/term_x/input", json={"data": "ls"}).status_code == 404

    def test_input_needs_writable_surface(self, client, lifecycle, make_script):
        handle = client.post("/api/runs", json={"script": make_script("a.sh")}).get_json()["data"]["session"]

        resp = client.post(f"/api/sessions/{handle}/input", json={"data": "ls"})

        assert resp.status_code == 400

    def test_config_endpoint(self, client, lifecycle):
        data = client.get("/api/config").get_json()["data"]

        assert data["workspaceRoot"] == lifecycle.config.workspace_root
        assert data["reusePolicy"] == "smart"



class TestScriptLookup:
    def test_script_outside_workspace_is_not_found(self, client, tmp_path_factory):
        outside = tmp_path_factory.mktemp("elsewhere") / "evil.sh"
        outside.write_text("#!/bin/sh\necho hi\n", encoding="utf-8")
        os.chmod(outside, 0o644)

        resp = client.post("/api/runs", json={"script": str(outside)})

        assert resp.status_code == 404
        assert resp.get_json()["ok"] is False
        assert os.stat(outside).st_mode & 0o777 == 0o644

    def test_non_script_file_is_not_found(self, client, surfaces, make_script):
        resp = client.post("/api/runs", json={"script": make_script("notes.txt", mode=0o644)})

        assert resp.status_code == 404
        assert surfaces.created == []

    def test_ignored_directory_is_not_found(self, client, make_script):
        resp = client.post("/api/runs", json={"script": make_script("node_modules/pkg/setup.sh")})

        assert resp.status_code == 404


class TestConfig:
    def test_put_saves_and_applies_settings(self, client, lifecycle, tmp_path, make_script):
        resp = client.put("/api/config", json={"dangerousCommandsBlacklist": ["make"], "confirmBeforeExecute": False})

        assert resp.status_code == 200
        assert resp.get_json()["data"]["dangerousCommandsBlacklist"] == ["make"]
        assert lifecycle.config.dangerous_commands_blacklist == ["make"]
        saved = json.loads((tmp_path / CONFIG_FILENAME).read_text(encoding="utf-8"))
        assert saved == {"dangerousCommandsBlacklist": ["make"], "confirmBeforeExecute": False}

        run = client.post("/api/runs", json={"script": make_script("build.sh", "make all\n")})
        assert run.status_code == 403
        assert run.get_json()["data"]["verdict"]["matched_rule"] == "make"

    def test_put_rejects_invalid_values(self, client, tmp_path):
        resp = client.put("/api/config", json={"reusePolicy": "sometimes"})

        assert resp.status_code == 400
        assert not (tmp_path / CONFIG_FILENAME).exists()

    def test_put_needs_settings(self, client):
        assert client.put("/api/config", json={}).status_code == 400

    def test_edited_file_is_reloaded(self, client, lifecycle, tmp_path):
        (tmp_path / CONFIG_FILENAME).write_text(
            json.dumps({"maxTerminalHistory": 4, "confirmBeforeExecute": False}),
            encoding="utf-8",
        )

        data = client.get("/api/config").get_json()["data"]

        assert data["maxTerminalHistory"] == 4
        assert lifecycle.config.max_terminal_history == 4
        assert lifecycle.pool.ceiling == 4


class TestClosingRunningSessions:
    def test_close_all_returns_running_script_to_idle(self, client, make_script):
        script = make_script("long.sh", "sleep 600\n")
        client.post("/api/runs", json={"script": script})

        closed = client.post("/api/sessions/close", json={"scope": "all"}).get_json()["data"]
        status = client.get("/api/runs/status", query_string={"script": script}).get_json()["data"]

        assert closed == {"closed": 1}
        assert status["status"] == "idle"
        assert client.get("/api/runs").get_json()["data"]["runs"] == []

def test_failed_terminal_is_server_error(config, scheduler, make_script):
    surfaces = FakeSurfaceFactory()
    surfaces.fail = True
    lifecycle = ExecutionLifecycle(config, scheduler=scheduler, surface_factory=surfaces)
    client = create_app(lifecycle=lifecycle).test_client()

    resp = client.post("/api/runs", json={"script": make_script("a.sh")})

    assert resp.status_code == 500
    assert resp.get_json()["error"] == "Could not start the script. Please try again."
