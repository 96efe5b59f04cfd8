"""Dependency ordering of formulas into an installation plan."""

from collections.abc import Iterable, Mapping
import enum

from pyvider.telemetry import logger

from .exceptions import CycleError, ReceiptError, UnknownDependencyError
from .models import Formula, PlanEntry, ResolvedPlan
from .receipts import ReceiptStore


class _Mark(enum.Enum):
    IN_PROGRESS = 1
    DONE = 2


def resolve(
    requested: Iterable[str],
    known: Mapping[str, Formula],
    receipts: ReceiptStore | None = None,
) -> ResolvedPlan:
    """Orders `requested` and their transitive build dependencies.

    Depth-first: each formula's dependencies are emitted, in the order it
    lists them, before the formula itself. Requested names are processed in
    the order given. Pure: nothing is fetched, built or written.
    """
    marks: dict[str, _Mark] = {}
    order: list[str] = []
    path: list[str] = []

    def visit(name: str, requester: str | None) -> None:
        mark = marks.get(name)
        if mark is _Mark.DONE:
            return
        if mark is _Mark.IN_PROGRESS:
            start = path.index(name)
            raise CycleError([*path[start:], name])

        formula = known.get(name)
        if formula is None:
            raise UnknownDependencyError(name, requester)

        marks[name] = _Mark.IN_PROGRESS
        path.append(name)
        for dependency in formula.build_dependencies:
            visit(dependency, name)
        path.pop()
        marks[name] = _Mark.DONE
        order.append(name)

    for name in requested:
        visit(name, None)

    entries = tuple(
        PlanEntry(
            name=name,
            dependencies=known[name].build_dependencies,
            already_satisfied=_is_satisfied(known[name], receipts),
        )
        for name in order
    )
    logger.debug("Resolved plan", order=" -> ".join(order))
    return ResolvedPlan(entries=entries)


def dependents(name: str, known: Mapping[str, Formula]) -> list[str]:
    """Names of formulas that list `name` as a build dependency."""
    return sorted(
        formula.name for formula in known.values() if name in formula.build_dependencies
    )


def _is_satisfied(formula: Formula, receipts: ReceiptStore | None) -> bool:
    if receipts is None:
        return False
    try:
        receipt = receipts.get(formula.name)
    except ReceiptError as e:
        logger.warning("Treating unreadable receipt as absent", formula=formula.name, error=str(e))
        return False
    if receipt is None or receipt.source_url != formula.source.url:
        return False
    if formula.source.is_archive:
        return receipt.resolved_source_ref == formula.source.checksum
    return True
