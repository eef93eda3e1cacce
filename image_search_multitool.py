#!/usr/bin/env python3
# Image Search Multitool - Concurrent multi-engine image downloader
# Copyright (C) 2025
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU General Public License for more details.
#
# You should have received a copy of the GNU General Public License
# along with this program.  If not, see <https://www.gnu.org/licenses/>.
"""
Search Google, Bing and Yandex in parallel and download every image they return.

Each engine runs in its own thread with its own headless browser; its results
are then downloaded concurrently into ``<output-dir>/<engine>/<query><n>.jpg``.

Example:
    python image_search_multitool.py "red panda" --targets google,bing --output-dir images
"""
from __future__ import annotations

import argparse
import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from batch_downloader import (
    COLLISION_POLICIES,
    DEFAULT_DOWNLOAD_TIMEOUT,
    DownloadError,
    download_batch,
)
from search_engines import (
    DEFAULT_SESSION_TIMEOUT,
    ENGINES,
    BrowserSession,
    FetchError,
    ImageSearchEngine,
    open_browser_session,
)


LOGGER = logging.getLogger("image_search_multitool")
ALL_TARGETS: Tuple[str, ...] = ("google", "bing", "yandex")
DEFAULT_OUTPUT_DIR = Path("images")

SessionFactory = Callable[..., BrowserSession]


class UnknownTargetError(ValueError):
    """Raised for a target name that has no search engine behind it."""


@dataclass(frozen=True)
class RunOptions:
    query: str
    targets: Sequence[str] = ALL_TARGETS
    output_dir: Path = DEFAULT_OUTPUT_DIR
    session_timeout: float = DEFAULT_SESSION_TIMEOUT
    download_timeout: float = DEFAULT_DOWNLOAD_TIMEOUT
    download_workers: int = 0
    on_collision: str = "overwrite"
    headless: bool = True


@dataclass
class TargetResult:
    target: str
    destination: Path
    candidates: int = 0
    saved: List[Path] = field(default_factory=list)
    failed: List[Tuple[int, str]] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return not self.errors


def parse_targets(raw: str) -> List[str]:
    """Split a comma-separated target list; ``all`` expands to every engine."""
    if raw.strip().lower() == "all":
        return list(ALL_TARGETS)
    targets = [part.strip().lower() for part in raw.split(",")]
    return list(dict.fromkeys(target for target in targets if target))


def run_target(
    target: str,
    engine: ImageSearchEngine,
    options: RunOptions,
    *,
    session_factory: SessionFactory,
) -> TargetResult:
    """Search one engine in a fresh session, then download what it found."""
    destination = options.output_dir / target
    result = TargetResult(target=target, destination=destination)
    LOGGER.info("Searching on %s...", target)

    try:
        with session_factory(options.session_timeout, headless=options.headless, label=target) as session:
            urls = list(engine.fetch_candidate_urls(session, options.query))
    except FetchError as error:
        LOGGER.error("Failed to search on %s: %s", target, error)
        result.errors.append(str(error))
        return result

    result.candidates = len(urls)
    try:
        batch = download_batch(
            urls,
            destination,
            options.query,
            headers=engine.request_headers(),
            timeout=options.download_timeout,
            on_collision=options.on_collision,
            max_workers=options.download_workers or None,
            label=target,
        )
    except DownloadError as error:
        LOGGER.error("Failed to download %s images: %s", target, error)
        result.errors.append(str(error))
        return result

    result.saved = batch.saved
    result.failed = batch.failed
    return result


def run_targets(
    options: RunOptions,
    *,
    engines: Optional[Mapping[str, ImageSearchEngine]] = None,
    session_factory: Optional[SessionFactory] = None,
) -> List[TargetResult]:
    """
    Run every selected target concurrently and wait for all of them.

    A target that fails (or is unknown) is logged and recorded in its own
    ``TargetResult``; it never cancels or delays the others. Results come back
    in the order the targets were selected.
    """
    engines = ENGINES if engines is None else engines
    session_factory = session_factory or open_browser_session

    results: Dict[str, TargetResult] = {}
    runnable: List[str] = []
    targets = list(dict.fromkeys(options.targets))
    for target in targets:
        if target in engines:
            runnable.append(target)
            continue
        error = UnknownTargetError(f"No such target: {target}")
        LOGGER.warning("%s", error)
        results[target] = TargetResult(
            target=target, destination=options.output_dir / target, errors=[str(error)]
        )

    if runnable:
        with ThreadPoolExecutor(max_workers=len(runnable), thread_name_prefix="target") as executor:
            future_to_target = {
                executor.submit(
                    run_target, target, engines[target], options, session_factory=session_factory
                ): target
                for target in runnable
            }
            for future in as_completed(future_to_target):
                target = future_to_target[future]
                try:
                    results[target] = future.result()
                except Exception as error:  # pylint: disable=broad-except
                    LOGGER.exception("Search on %s crashed", target)
                    results[target] = TargetResult(
                        target=target, destination=options.output_dir / target, errors=[str(error)]
                    )

    return [results[target] for target in targets if target in results]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Search images on multiple engines (Google, Bing, Yandex) and download them concurrently."
    )
    parser.add_argument("query", help="Search phrase to look up images for.")
    parser.add_argument(
        "-t",
        "--targets",
        default="all",
        help="Comma-separated search targets: google, bing, yandex, or all (default: all).",
    )
    parser.add_argument(
        "-o",
        "--output-dir",
        type=Path,
        default=DEFAULT_OUTPUT_DIR,
        help="Base directory where images should be saved (default: ./images).",
    )
    parser.add_argument(
        "--session-timeout",
        type=float,
        default=DEFAULT_SESSION_TIMEOUT,
        help="Seconds each engine's browser session may run before it is torn down (default: 60).",
    )
    parser.add_argument(
        "--download-timeout",
        type=float,
        default=DEFAULT_DOWNLOAD_TIMEOUT,
        help="Timeout in seconds for individual image requests (default: 15).",
    )
    parser.add_argument(
        "--download-workers",
        type=int,
        default=0,
        help="Maximum parallel downloads per engine (default: 0, one per image).",
    )
    parser.add_argument(
        "--on-collision",
        choices=COLLISION_POLICIES,
        default="overwrite",
        help="What to do when a numbered image already exists (default: overwrite).",
    )
    parser.add_argument(
        "--show-browser",
        action="store_true",
        help="Run the browsers visibly instead of in headless mode.",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=("DEBUG", "INFO", "WARNING", "ERROR"),
        help="Adjust logging verbosity for the multitool (default: INFO).",
    )
    return parser


def configure_logging(level: str) -> None:
    logging.basicConfig(level=getattr(logging, level.upper()), format="[%(levelname)s] %(message)s")
    LOGGER.setLevel(getattr(logging, level.upper()))


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    query = args.query.strip()
    if not query:
        parser.error("Please provide a non-empty search query.")
    if args.session_timeout <= 0:
        parser.error("--session-timeout must be a positive number.")
    if args.download_timeout <= 0:
        parser.error("--download-timeout must be a positive number.")

    configure_logging(args.log_level)

    options = RunOptions(
        query=query,
        targets=parse_targets(args.targets),
        output_dir=args.output_dir.expanduser(),
        session_timeout=args.session_timeout,
        download_timeout=args.download_timeout,
        download_workers=max(0, args.download_workers),
        on_collision=args.on_collision,
        headless=not args.show_browser,
    )

    LOGGER.info("Saving output under %s", options.output_dir.resolve())
    results = run_targets(options)

    for result in results:
        if result.errors:
            LOGGER.info("%s: failed (%s)", result.target, "; ".join(result.errors))
            continue
        LOGGER.info(
            "%s: candidates=%d saved=%d failed=%d destination=%s",
            result.target,
            result.candidates,
            len(result.saved),
            len(result.failed),
            result.destination,
        )

    LOGGER.info("Image search and download completed.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
