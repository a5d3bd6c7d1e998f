"""状態機械モジュール"""

from .assembly import AssemblyProcessManager
from .machines import (
    ASSEMBLY_TRANSITIONS,
    CARD_TRANSITIONS,
    SHEET_TRANSITIONS,
    Transition,
    TransitionTable,
    fold,
    rehydrate,
    transition_assembly,
    transition_card,
    transition_sheet,
)
from .models import AggregateState, AssemblyState, CardState, Policy, SheetState

__all__ = [
    "AggregateState",
    "SheetState",
    "CardState",
    "AssemblyState",
    "Policy",
    "Transition",
    "TransitionTable",
    "SHEET_TRANSITIONS",
    "CARD_TRANSITIONS",
    "ASSEMBLY_TRANSITIONS",
    "fold",
    "rehydrate",
    "transition_sheet",
    "transition_card",
    "transition_assembly",
    "AssemblyProcessManager",
]
