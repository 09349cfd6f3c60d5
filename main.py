"""Headless replay tool: feeds recorded editor events through a sync session.

Usage::

    python main.py session.json --out boards/ --backups drafts/

The session file holds the initial board and a list of timed steps::

    {
      "board_id": "demo",
      "nodes": [...], "edges": [...],
      "steps": [
        {"delay_ms": 100, "nodes": [{"type": "position", "id": "a", "position": {...}}]},
        {"delay_ms": 50, "node_data": {"id": "a", "data": {"title": "Intro"}}},
        {"delay_ms": 0, "foreground": true}
      ]
    }

Saves run on the Qt event loop exactly as they do inside the editor.
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from PySide6.QtCore import QCoreApplication, QTimer

try:
    from boardsync.backends import DirectoryBoardStore
    from boardsync.config import AutosaveSettings
    from boardsync.controllers import BoardSyncSession
    from boardsync.log import configure_logging
    from boardsync.managers.backup import JsonDirectoryStorage
    from boardsync.scheduling import QtScheduler
    from boardsync.workers import QtTaskRunner
except Exception as exc:
    # Provide a clear error if imports fail due to PYTHONPATH issues
    raise RuntimeError("Failed to import boardsync. Ensure project root is on PYTHONPATH.") from exc

logger = logging.getLogger("boardsync.replay")


def _apply_step(session: BoardSyncSession, step: Dict[str, Any]) -> None:
    if step.get("nodes"):
        session.apply_node_changes(step["nodes"])
    if step.get("edges"):
        session.apply_edge_changes(step["edges"])
    if step.get("node_data"):
        session.update_node_data(step["node_data"]["id"], step["node_data"]["data"])
    if step.get("edge_data"):
        session.update_edge_data(step["edge_data"]["id"], step["edge_data"]["data"])
    if step.get("foreground"):
        session.on_foreground()
    if step.get("save"):
        session.save_now()


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("session", type=Path, help="JSON file with the board and steps")
    parser.add_argument("--out", type=Path, default=Path("boards"), help="board output directory")
    parser.add_argument("--backups", type=Path, default=Path("drafts"), help="backup directory")
    parser.add_argument("--debounce-ms", type=int, default=None)
    parser.add_argument("--log-file", type=Path, default=None, help="rotating log file")
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    configure_logging(args.log_file)
    recording = json.loads(args.session.read_text(encoding="utf-8"))
    board_id = recording.get("board_id", "board")

    app = QCoreApplication.instance() or QCoreApplication(sys.argv[:1])
    store = DirectoryBoardStore(args.out)
    if store.get_board(board_id) is None:
        store.save_board(
            board_id,
            {"nodes": recording.get("nodes", []), "edges": recording.get("edges", [])},
        )

    options: Dict[str, Any] = {"backupStorageKey": f"board-draft:{board_id}"}
    if args.debounce_ms is not None:
        options["debounceMs"] = args.debounce_ms
    scheduler = QtScheduler()
    runner = QtTaskRunner()
    session = BoardSyncSession(
        board_id,
        store,
        nodes=recording.get("nodes", []),
        edges=recording.get("edges", []),
        settings=AutosaveSettings.from_options(options),
        storage=JsonDirectoryStorage(args.backups),
        scheduler=scheduler,
        runner=runner,
    )
    session.engine.signals.status_changed.connect(
        lambda status: logger.info("save status: %s", status)
    )

    steps: List[Dict[str, Any]] = list(recording.get("steps", []))
    applied = {"count": 0}

    def _run_step(step: Dict[str, Any]) -> None:
        _apply_step(session, step)
        applied["count"] += 1

    elapsed = 0
    for step in steps:
        elapsed += int(step.get("delay_ms", 0))
        scheduler.call_later(elapsed, lambda step=step: _run_step(step))

    poll = QTimer()

    def _check_done() -> None:
        engine = session.engine
        if applied["count"] < len(steps):
            return
        if engine.is_saving or engine.is_scheduled:
            return
        poll.stop()
        app.quit()

    poll.timeout.connect(_check_done)
    poll.start(50)
    app.exec()

    runner.wait_for_done()
    session.close()
    if session.has_unsaved_changes:
        logger.error("replay finished with unsaved changes; backup kept in %s", args.backups)
        return 1
    logger.info("replay finished; board written to %s", args.out)
    return 0


if __name__ == "__main__":
    sys.exit(main())
