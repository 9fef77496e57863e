from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path

import pytest

from tradescan.cli import build_parser, main
from tradescan.models import ChunkWaystoneObservation, Dimension, Position, Scan, ShopObservation
from tradescan.service import ScanService
from tradescan.state.store import StateStore

OW = Dimension.OVERWORLD


def _seed(path: Path) -> None:
    with ScanService(StateStore.open(path)) as service:
        service.ingest_scan(
            Scan(sender_id="p", dimension=OW, chunk_x=0, chunk_z=0, scanned_at=datetime(2026, 1, 1, tzinfo=UTC)),
            [ShopObservation(dimension=OW, x=0, y=64, z=0, owner="A", item="X", price=1, amount=1, action="sell")],
            [ChunkWaystoneObservation(dimension=OW, x=0, y=64, z=10, name="W1", owner="ann")],
        )
        with service.store.transaction():
            service.store.set_nearest(Position(OW, 0, 64, 0), None, None)


def test_parser_defaults() -> None:
    args = build_parser().parse_args(["repair-nearest"])

    assert args.scope == "all"
    assert args.db is None


def test_repair_nearest_stale(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    db = tmp_path / "scans.db"
    _seed(db)

    code = main(["--db", str(db), "repair-nearest", "--scope", "stale"])

    assert code == 0
    assert json.loads(capsys.readouterr().out) == {"annotated": 1, "ok": True, "scope": "stale"}
    with ScanService(StateStore.open(db)) as service:
        nearest = service.nearest_waystone(Position(OW, 0, 64, 0))
    assert nearest is not None and nearest.name == "W1"


def test_invalid_environment_exits_non_zero(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("TRADESCAN_PORT", "not-a-port")

    assert main(["--db", str(tmp_path / "x.db"), "repair-nearest"]) == 1
