"""Process entry point: configuration checks, startup auth and wiring."""

import httpx
import pytest
import respx

from conftest import MemoryBlobStore, MemoryCheckpointStore
from bizarchive import main as entry
from bizarchive.config import Settings
from bizarchive.connectors.dynatrace.client import EXECUTE_PATH
from bizarchive.core.errors import ConfigError
from bizarchive.models.checkpoint import initial_checkpoint

TOKEN_URL = "https://sso.example.com/sso/oauth2/token"


def make_settings(tmp_path, **overrides) -> Settings:
    values = dict(
        tenant_name="tenant",
        oauth_token_url=TOKEN_URL,
        oauth_client_id="client-id",
        oauth_client_secret="client-secret",
        oauth_scope="storage:bizevents:read",
        oauth_resource_urn="urn:dtaccount:abc",
        s3_data_bucket="data",
        s3_checkpoint_bucket="checkpoints",
        temp_local_dir=str(tmp_path),
        poll_interval_seconds=0,
        time_wait_after_upload_secs=0,
        task_wait_interval_seconds=1,
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


def test_parse_args():
    args = entry.parse_args(["--only", "IC-07", "--only", "IC-01", "--schedule"])
    assert args.only == ["IC-07", "IC-01"]
    assert args.schedule is True


def test_missing_configuration_exits_1(monkeypatch, tmp_path):
    monkeypatch.setattr(entry, "settings", make_settings(tmp_path, tenant_name=""))
    assert entry.main([]) == 1


@pytest.mark.asyncio
async def test_missing_configuration_names_fields(tmp_path):
    cfg = make_settings(tmp_path, oauth_client_id="", s3_data_bucket="")
    with pytest.raises(ConfigError, match="oauth_client_id, s3_data_bucket"):
        await entry.run_export(cfg=cfg)


def test_unknown_integration_code_exits_1(monkeypatch, tmp_path):
    monkeypatch.setattr(entry, "settings", make_settings(tmp_path))
    assert entry.main(["--only", "IC-99"]) == 1


def test_unknown_checkpoint_backend(tmp_path):
    with pytest.raises(ConfigError):
        entry.build_checkpoint_store(make_settings(tmp_path, checkpoint_backend="redis"))


def test_sql_checkpoint_backend(tmp_path):
    cfg = make_settings(
        tmp_path,
        checkpoint_backend="sql",
        checkpoint_database_url=f"sqlite:///{tmp_path / 'cp.db'}",
    )
    assert isinstance(entry.build_checkpoint_store(cfg), entry.SqlCheckpointStore)


def test_auth_failure_aborts_run(monkeypatch, tmp_path):
    monkeypatch.setattr(entry, "settings", make_settings(tmp_path))
    with respx.mock(assert_all_called=False) as mock:
        mock.post(TOKEN_URL).mock(return_value=httpx.Response(401, text="denied"))
        execute = mock.post(f"https://tenant.apps.dynatrace.com{EXECUTE_PATH}")

        assert entry.main(["--only", "IC-07"]) == 1
        assert not execute.called


@respx.mock
def test_export_run_wiring(monkeypatch, tmp_path):
    monkeypatch.setattr(entry, "settings", make_settings(tmp_path))
    blobs = MemoryBlobStore()
    checkpoints = MemoryCheckpointStore(initial=lambda iid: initial_checkpoint(iid, 3))
    monkeypatch.setattr(entry, "archive_blob_store", lambda cfg: blobs)
    monkeypatch.setattr(entry, "build_checkpoint_store", lambda cfg: checkpoints)

    respx.post(TOKEN_URL).mock(
        return_value=httpx.Response(200, json={"access_token": "abc", "expires_in": 3600})
    )
    execute = respx.post(f"https://tenant.apps.dynatrace.com{EXECUTE_PATH}").mock(
        return_value=httpx.Response(
            200, json={"state": "SUCCEEDED", "result": {"records": [{"count": 0}]}}
        )
    )

    assert entry.main(["--only", "IC-07"]) == 0
    # Two complete hours between the 3h lookback and the horizon, both empty.
    assert execute.call_count == 2
    assert execute.calls.last.request.headers["Authorization"] == "Bearer abc"
    assert checkpoints.saves == []
    assert blobs.objects == {}


def test_cli_skips_thread_join_when_workers_are_stuck(monkeypatch):
    exits = []
    monkeypatch.setattr(entry, "main", lambda: 1)
    monkeypatch.setattr(entry, "abandoned_threads", lambda: ["bizarchive-io_0"])
    monkeypatch.setattr(entry.logging, "shutdown", lambda: None)
    monkeypatch.setattr(entry.os, "_exit", exits.append)

    with pytest.raises(SystemExit):
        entry.cli()

    assert exits == [1]


def test_cli_exits_normally_without_stuck_workers(monkeypatch):
    monkeypatch.setattr(entry, "main", lambda: 0)
    monkeypatch.setattr(entry, "abandoned_threads", lambda: [])

    with pytest.raises(SystemExit) as excinfo:
        entry.cli()
    assert excinfo.value.code == 0
