"""
Pipeline orchestration for flatten and sort.

scan -> (classify, sort only) -> build plan -> validate -> apply
"""

import threading
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

from tqdm import tqdm

from .errors import ClassificationError, PipelineCancelled, ServiceUnavailableError
from .executor import ExecutionReport, apply_plan
from .llm.classifier import Classifier
from .planning import Plan, build_flatten_plan, build_sort_plan, validate_plan
from .scanner import Entry, scan_directory
from .utils import print_warning

DEFAULT_WORKERS = 4


@dataclass(frozen=True)
class PipelineResult:
    plan: Plan
    report: ExecutionReport


def _is_cancelled(cancel_event: threading.Event | None) -> bool:
    return cancel_event is not None and cancel_event.is_set()


def classify_entries(
    entries: Iterable[Entry],
    classifier: Classifier,
    workers: int = DEFAULT_WORKERS,
    cancel_event: threading.Event | None = None,
    show_progress: bool = True,
) -> list[tuple[Entry, object]]:
    """
    Classify entries with at most `workers` calls in flight.

    Entries are dispatched one at a time as slots free up, so the
    cancellation signal and service availability are checked between
    dispatches.

    Returns:
        (entry, ClassificationResult or ClassificationError) pairs in the
        order the entries were given.

    Raises:
        ServiceUnavailableError: Once, if the service turned out to be
            unreachable. No further entries are dispatched after that.
        PipelineCancelled: If cancellation was observed. Its `outcomes` hold
            the classifications that completed before that.
    """
    workers = max(1, workers)
    entries = list(entries)
    outcomes: dict[int, object] = {}
    in_flight = {}
    unavailable: ServiceUnavailableError | None = None
    interrupted = False
    next_index = 0

    pool = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="classify")
    pbar = tqdm(total=len(entries), unit="img", desc="Classifying", disable=not show_progress)
    try:
        while not _is_cancelled(cancel_event):
            while (
                next_index < len(entries)
                and len(in_flight) < workers
                and unavailable is None
                and not _is_cancelled(cancel_event)
            ):
                future = pool.submit(classifier.classify, entries[next_index])
                in_flight[future] = next_index
                next_index += 1

            if not in_flight:
                break

            done, _ = wait(in_flight, return_when=FIRST_COMPLETED)
            for future in done:
                index = in_flight.pop(future)
                try:
                    outcomes[index] = future.result()
                except ServiceUnavailableError as e:
                    if unavailable is None:
                        unavailable = e
                    outcomes[index] = e
                except ClassificationError as e:
                    outcomes[index] = e
                pbar.update(1)
    except KeyboardInterrupt:
        interrupted = True
        if cancel_event is not None:
            cancel_event.set()
    finally:
        pbar.close()
        cancelled = interrupted or _is_cancelled(cancel_event)
        # In-flight calls have no side effects, so they can be abandoned
        pool.shutdown(wait=not cancelled, cancel_futures=True)

    if unavailable is not None:
        raise unavailable

    completed = [(entries[i], outcomes[i]) for i in sorted(outcomes)]
    if cancelled:
        raise PipelineCancelled(
            f"Cancelled after classifying {len(completed)} of {len(entries)} images",
            outcomes=completed,
        )
    return completed


def _apply_unless_cancelled(
    plan: Plan,
    dry_run: bool,
    cleanup: bool,
    cancel_event: threading.Event | None,
    show_progress: bool,
) -> ExecutionReport:
    for warning in validate_plan(plan):
        print_warning(warning)

    if _is_cancelled(cancel_event):
        raise PipelineCancelled("Cancelled before applying the plan", plan=plan)

    return apply_plan(
        plan,
        dry_run=dry_run,
        cleanup=cleanup,
        cancel_event=cancel_event,
        show_progress=show_progress,
    )


def run_flatten(
    root: Path,
    dry_run: bool = True,
    extensions: set[str] | None = None,
    cancel_event: threading.Event | None = None,
    show_progress: bool = True,
) -> PipelineResult:
    """
    Move every nested image up into `root`.

    Raises:
        ScanError: If the root cannot be scanned.
        PipelineCancelled: If cancelled before the apply step.
    """
    entries = scan_directory(root, extensions)
    plan = build_flatten_plan(root, entries)
    report = _apply_unless_cancelled(plan, dry_run, True, cancel_event, show_progress)
    return PipelineResult(plan=plan, report=report)


def run_sort(
    root: Path,
    classifier: Classifier,
    dry_run: bool = True,
    workers: int = DEFAULT_WORKERS,
    extensions: set[str] | None = None,
    cancel_event: threading.Event | None = None,
    show_progress: bool = True,
) -> PipelineResult:
    """
    Move every image into `root/<category>/` according to the classifier.

    If the classifier exposes `check_service()`, the service is probed once
    before anything is scanned or classified.

    Raises:
        ScanError: If the root cannot be scanned.
        ServiceUnavailableError: If the inference service is unreachable.
        PipelineCancelled: If cancelled before the apply step. Carries the
            plan built from the classifications that did complete; that plan
            is never applied.
    """
    check = getattr(classifier, "check_service", None)
    if check is not None and not check():
        model = getattr(getattr(classifier, "client", None), "model", "the model")
        print_warning(f"{model} is not installed on the server. Run: ollama pull {model}")

    entries = scan_directory(root, extensions)

    try:
        outcomes = classify_entries(entries, classifier, workers, cancel_event, show_progress)
    except PipelineCancelled as e:
        e.plan = build_sort_plan(root, e.outcomes)
        raise

    plan = build_sort_plan(root, outcomes)
    report = _apply_unless_cancelled(plan, dry_run, False, cancel_event, show_progress)
    return PipelineResult(plan=plan, report=report)
