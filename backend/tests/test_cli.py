import json
from uuid import uuid4

import pytest

from assetflow import cli
from assetflow.models.asset import AssetStatus
from assetflow.models.job import JobStatus
from assetflow.services import job_queue, metadata_store
from scripts import orphan_blobs

BUCKET = "assets"


@pytest.fixture
def wired_cli(monkeypatch: pytest.MonkeyPatch, session_factory, blob_store):
    monkeypatch.setattr(cli, "SessionLocal", session_factory)
    monkeypatch.setattr(cli, "build_blob_store", lambda: blob_store)
    monkeypatch.setattr(cli, "get_redis", lambda: None)
    return session_factory


@pytest.mark.anyio
async def test_ingest_then_queue_stats(wired_cli, tmp_path, capsys: pytest.CaptureFixture[str], make_image) -> None:
    source = tmp_path / "photo.png"
    source.write_bytes(make_image(40, 30, fmt="PNG"))

    await cli.ingest_file(source, owner_id="owner-1", content_type=None)
    ingested = json.loads(capsys.readouterr().out)
    assert ingested["status"] == "pending"
    assert ingested["primary_key"].endswith(".png")

    await cli.queue_stats()
    assert json.loads(capsys.readouterr().out)["queued"] == 1


@pytest.mark.anyio
async def test_delete_asset_reports_cleanup_and_usage(
    wired_cli, blob_store, tmp_path, capsys: pytest.CaptureFixture[str]
) -> None:
    source = tmp_path / "notes.txt"
    source.write_text("hello", encoding="utf-8")
    await cli.ingest_file(source, owner_id="owner-1", content_type="text/plain")
    asset_id = json.loads(capsys.readouterr().out)["asset_id"]

    await cli.delete_asset(cli._parse_uuid(asset_id, label="asset id"))
    report = json.loads(capsys.readouterr().out)
    assert report["ok"] is True
    assert report["owner_asset_count"] == 0
    assert list(blob_store.iter_keys(BUCKET)) == []

    with pytest.raises(SystemExit):
        await cli.delete_asset(uuid4())


@pytest.mark.anyio
async def test_requeue_and_dead_letter_listing(wired_cli, tmp_path, capsys: pytest.CaptureFixture[str]) -> None:
    source = tmp_path / "a.txt"
    source.write_text("x", encoding="utf-8")
    await cli.ingest_file(source, owner_id="owner-1", content_type="text/plain")
    asset_id = cli._parse_uuid(json.loads(capsys.readouterr().out)["asset_id"], label="asset id")

    async with wired_cli() as session:
        leased = await job_queue.lease(session, worker_id="w", visibility_timeout=30)
        await metadata_store.claim_for_processing(session, asset_id, lease_token=leased.lease_token)
        await metadata_store.mark_failed(session, asset_id, lease_token=leased.lease_token, reason="boom")
        await job_queue.fail(session, leased.job_id, lease_token=leased.lease_token, retryable=False, error="boom")

    await cli.list_dead_letters(10)
    dead = json.loads(capsys.readouterr().out)
    assert [row["job_id"] for row in dead] == [str(leased.job_id)]
    assert dead[0]["last_error"] == "boom"

    await cli.requeue(leased.job_id)
    assert "Requeued" in capsys.readouterr().out
    async with wired_cli() as session:
        job = await job_queue.get_job(session, leased.job_id)
        assert job.status == JobStatus.queued
        asset = await metadata_store.find_by_id(session, asset_id)
        assert asset.status == AssetStatus.failed

    with pytest.raises(SystemExit):
        await cli.requeue(uuid4())


def test_parser_knows_every_command() -> None:
    parser = cli._build_parser()
    for argv in (
        ["worker"],
        ["init-db"],
        ["ingest", "--file", "a.jpg", "--owner-id", "o"],
        ["reprocess", "--asset-id", str(uuid4())],
        ["presign", "--asset-id", str(uuid4()), "--thumbnail"],
        ["delete-asset", "--asset-id", str(uuid4())],
        ["reconcile-usage", "--owner-id", "o"],
        ["dead-letters", "--limit", "5"],
        ["requeue", "--job-id", str(uuid4())],
        ["queue-stats"],
    ):
        assert parser.parse_args(argv).command == argv[0]


def test_invalid_uuid_exits() -> None:
    with pytest.raises(SystemExit):
        cli.main(["reprocess", "--asset-id", "not-a-uuid"])


@pytest.mark.anyio
async def test_orphan_sweep_finds_unreferenced_blobs(
    wired_cli, blob_store, tmp_path, capsys: pytest.CaptureFixture[str]
) -> None:
    source = tmp_path / "kept.txt"
    source.write_text("keep", encoding="utf-8")
    await cli.ingest_file(source, owner_id="owner-1", content_type="text/plain")
    kept_key = json.loads(capsys.readouterr().out)["primary_key"]
    blob_store.put(BUCKET, "thumbnails/dangling.jpg", b"x", "image/jpeg")

    orphans = await orphan_blobs.main(False, session_factory=wired_cli, blob_store=blob_store)
    assert orphans == {"thumbnails/dangling.jpg"}
    assert set(blob_store.iter_keys(BUCKET)) == {kept_key, "thumbnails/dangling.jpg"}

    await orphan_blobs.main(True, session_factory=wired_cli, blob_store=blob_store)
    assert list(blob_store.iter_keys(BUCKET)) == [kept_key]
