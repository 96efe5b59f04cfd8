"""
Formulary builds and installs native libraries from declarative formulas:
dependency resolution, sandboxed build steps, idempotent installs and
receipts.
"""

from .engine.orchestrator import InstallOptions, InstallReport, Orchestrator
from .formula import load_formulae, parse, parse_file
from .models import CommandSpec, Formula, FormulaState, Receipt, ResolvedPlan
from .receipts import FileReceiptStore
from .resolver import resolve

__all__ = [
    "CommandSpec",
    "FileReceiptStore",
    "Formula",
    "FormulaState",
    "InstallOptions",
    "InstallReport",
    "Orchestrator",
    "Receipt",
    "ResolvedPlan",
    "load_formulae",
    "parse",
    "parse_file",
    "resolve",
]
