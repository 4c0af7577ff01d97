import json

import pytest
from click.testing import CliRunner

from maskctl.cli import cli
from maskctl.engines import FileBlobStore


@pytest.fixture
def invoke(tmp_path):
    runner = CliRunner()
    base = ["--db", str(tmp_path / "maskctl.db"), "--blobs", str(tmp_path / "blobs")]

    def _invoke(*args):
        return runner.invoke(cli, base + list(args))
    return _invoke


def _submit(invoke, *extra):
    result = invoke("submit", "--owner", "alice", "--mode", "blur",
                    "--input", "inputs/clip.mp4", "--point", "12,34", *extra)
    assert result.exit_code == 0, result.output
    assert result.output.startswith("Submitted ")
    return result.output.split()[1]


def test_submit_then_status(invoke):
    job_id = _submit(invoke, "--tier", "priority", "--batch-size", "8")

    result = invoke("status", job_id)
    assert result.exit_code == 0
    view = json.loads(result.output)
    assert view["job_id"] == job_id
    assert view["stage"] == "validate"
    assert view["status"] == "queued"
    assert view["progress_percent"] == 0


def test_submit_rejects_bad_point(invoke):
    result = invoke("submit", "--owner", "alice", "--mode", "blur",
                    "--input", "inputs/clip.mp4", "--point", "12")
    assert result.exit_code == 1
    assert "Invalid point" in result.output


def test_status_of_unknown_job(invoke):
    result = invoke("status", "nope")
    assert result.exit_code == 1
    assert "not found" in result.output


def test_list_and_cancel(invoke):
    assert "No jobs." in invoke("list").output
    job_id = _submit(invoke)

    listed = invoke("list", "--status", "queued").output
    assert job_id in listed

    assert f"Cancelled {job_id}." in invoke("cancel", job_id).output
    assert "already finished" in invoke("cancel", job_id).output
    assert job_id in invoke("list", "--status", "failed").output


def test_stats(invoke):
    _submit(invoke)
    stats = json.loads(invoke("stats").output)
    assert stats["jobs"]["queued"] == 1
    assert stats["queue"]["pending"] == 1


def test_dlq_list_empty_and_retry_unknown(invoke):
    assert "DLQ is empty." in invoke("dlq", "list").output
    result = invoke("dlq", "retry", "nope")
    assert result.exit_code == 1


def test_config_get_and_set(invoke):
    cfg = json.loads(invoke("config", "get").output)
    assert cfg["lease_seconds"] == "120"

    result = invoke("config", "set", "lease_seconds", "3m")
    assert result.exit_code == 0
    assert json.loads(invoke("config", "get").output)["lease_seconds"] == "3m"


@pytest.mark.parametrize("key,value", [
    ("bogus", "1"),
    ("max_workers", "many"),
    ("heartbeat_seconds", "500"),
])
def test_config_set_rejects_bad_values(invoke, key, value):
    result = invoke("config", "set", key, value)
    assert result.exit_code == 1
    assert "Error:" in result.output


def test_blob_put(invoke, tmp_path):
    source = tmp_path / "clip.mp4"
    source.write_bytes(b"video-bytes")

    result = invoke("blob", "put", "inputs/clip.mp4", str(source))
    assert result.exit_code == 0
    assert FileBlobStore(str(tmp_path / "blobs")).get("inputs/clip.mp4") == b"video-bytes"

    assert invoke("blob", "put", "../escape", str(source)).exit_code == 1
