from __future__ import annotations

import json

from replyrag.cli import main


def test_ingest_command(engine, catalog_payloads, tmp_path, capsys):
    path = tmp_path / "catalog.json"
    path.write_text(json.dumps({"items": catalog_payloads}), encoding="utf-8")

    code = main(["ingest", "--source-type", "catalog", "--file", str(path), "--pause", "0"], engine=engine)
    output = json.loads(capsys.readouterr().out)

    assert code == 0
    assert output["success"] is True
    assert output["data"]["successful"] == 3


def test_ingest_reports_partial_failures(engine, catalog_payloads, tmp_path, capsys):
    path = tmp_path / "catalog.json"
    path.write_text(json.dumps([*catalog_payloads, {"name": "no id"}]), encoding="utf-8")

    code = main(["ingest", "--source-type", "catalog", "--file", str(path), "--pause", "0"], engine=engine)

    assert code == 1
    assert json.loads(capsys.readouterr().out)["data"]["failed"] == 1


def test_ingest_unreadable_file(engine, tmp_path, capsys):
    path = tmp_path / "broken.json"
    path.write_text("{not json", encoding="utf-8")

    code = main(["ingest", "--source-type", "comment", "--file", str(path)], engine=engine)

    assert code == 1
    assert json.loads(capsys.readouterr().out)["error"]["kind"] == "validation"


def test_build_pools_and_stats(engine, capsys):
    assert main(["build-pools", "--content-item", "V1", "--overwrite"], engine=engine) == 0
    single = json.loads(capsys.readouterr().out)
    assert main(["build-pools", "--max-pool-size", "1"], engine=engine) == 0
    bulk = json.loads(capsys.readouterr().out)
    assert main(["stats"], engine=engine) == 0
    stats = json.loads(capsys.readouterr().out)

    assert single["data"]["pool_size"] == 2
    assert bulk["data"]["built"] == 2
    assert stats["data"]["catalog_items"] == 3
