"""Consensus subpackage: decisions, conflicts and the screening state machine.

The main entry points are:

* :class:`ConsensusEvaluator` – record a reviewer decision and finalize
  the study, keep it in screening or open a conflict.
* :class:`ConflictManager` – open, discuss, escalate and resolve
  conflicts.
* :class:`BatchScreener` – lead batch decisions and AI-suggestion
  adoption across many studies.
* :class:`IngestionDispatcher` – deliver ready-for-ingestion signals of
  included studies to the downstream queue exactly once.
"""

from .batch import BatchOperation, BatchResult, BatchScreener
from .conflicts import ConflictManager, LoggingNotifier, Notifier, ResolutionOutcome
from .evaluator import ConsensusEvaluator, DecisionOutcome
from .finalize import FinalizeResult, finalize_study
from .ingestion import (
    IngestionDispatcher,
    IngestionQueue,
    JsonlIngestionQueue,
    RecordingIngestionQueue,
)
from .state_machine import Transition, TransitionReason, evaluate_decisions

__all__ = [
    "BatchOperation",
    "BatchResult",
    "BatchScreener",
    "ConflictManager",
    "LoggingNotifier",
    "Notifier",
    "ResolutionOutcome",
    "ConsensusEvaluator",
    "DecisionOutcome",
    "FinalizeResult",
    "finalize_study",
    "IngestionDispatcher",
    "IngestionQueue",
    "JsonlIngestionQueue",
    "RecordingIngestionQueue",
    "Transition",
    "TransitionReason",
    "evaluate_decisions",
]
