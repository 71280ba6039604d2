#!/usr/bin/env python3
"""CLI: Analyze photos into vocabulary scenes and inspect the word index."""

from __future__ import annotations

import argparse
import logging
import sys
import time
from pathlib import Path

# Ensure the package is importable when running as a script
sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "src"))

from picturetalk import config
from picturetalk.app_state import create_app_state
from picturetalk.layout.placement import Size, layout_cards
from picturetalk.tasks.task_manager import TaskStatus


def _print_scene(scene, width: float, height: float) -> None:
    print(f"\nScene {scene.id}  ({scene.created_at:%Y-%m-%d %H:%M})")
    print(f"  {scene.sentence.text}")
    print(f"  {scene.sentence.translation}")
    centers = layout_cards(
        [w.position for w in scene.words], Size(width, height), Size(120, 60),
    )
    for word, center in zip(scene.words, centers):
        pos = word.position
        print(
            f"  - {word.word:<24} {word.phoneticsymbols:<20} {word.explanation}"
            f"  at ({pos.x:.4f}, {pos.y:.4f}) -> card ({center.x:.0f}, {center.y:.0f})"
        )


def main() -> None:
    parser = argparse.ArgumentParser(description="Analyze photos into vocabulary scenes")
    parser.add_argument("images", nargs="*", type=Path, help="Image files to analyze")
    parser.add_argument(
        "--data-dir",
        type=Path,
        default=None,
        help=f"Data directory (default: {config.DATA_DIR})",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=600,
        help="Seconds to wait for all analyses to finish (default: 600)",
    )
    parser.add_argument(
        "--display-size",
        type=str,
        default="390x520",
        help="Display size WIDTHxHEIGHT used to lay out word cards (default: 390x520)",
    )
    parser.add_argument("--words", action="store_true", help="List the unique-word index")
    parser.add_argument("--daily", action="store_true", help="Generate and print today's lesson")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else getattr(logging, config.LOG_LEVEL, logging.INFO),
        format="%(asctime)s %(levelname)-5s [%(name)s] %(message)s",
        datefmt="%H:%M:%S",
    )

    try:
        width, height = (float(v) for v in args.display_size.lower().split("x"))
    except ValueError:
        print(f"Error: invalid --display-size {args.display_size!r}", file=sys.stderr)
        sys.exit(1)

    state = create_app_state(data_dir=args.data_dir)
    try:
        if args.images:
            known = {s.id for s in state.scenes.list_scenes()}
            for path in args.images:
                if not path.is_file():
                    print(f"Warning: {path} is not a file, skipping", file=sys.stderr)
                    continue
                task = state.tasks.submit(path.read_bytes())
                print(f"Queued {path} as task {task.id}")

            t0 = time.perf_counter()
            if not state.tasks.wait_idle(timeout=args.timeout):
                print("Error: timed out waiting for analyses", file=sys.stderr)
            print(f"Done in {time.perf_counter() - t0:.1f}s")

            for task in state.tasks.list_tasks():
                if task.status == TaskStatus.FAILED:
                    print(f"Task {task.id} failed: {task.error_message}", file=sys.stderr)
            for scene in state.scenes.list_scenes():
                if scene.id not in known:
                    _print_scene(scene, width, height)

        if args.words:
            words = state.words.all_words()
            print(f"\n{len(words)} unique words:")
            for w in words:
                star = "*" if w.is_favorite else " "
                print(f" {star} {w.word:<24} {w.explanation}  ({len(w.scene_ids)} scenes)")

        if args.daily:
            state.learning.generate_daily_task()
            task = state.learning.today_task()
            if task is None:
                print("No words available yet; analyze some photos first.")
            else:
                print(f"\nToday's lesson ({task.status.value}):")
                for w in task.words:
                    print(f"  [{w.status.value:<10}] {w.word:<24} {w.explanation}")
    finally:
        state.shutdown()


if __name__ == "__main__":
    main()
