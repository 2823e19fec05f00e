"""
Forge

Turns free-text development requests into quality-gated context packages
for an external executor, and learns from the executors' reports so the
next preparation for a similar request is better informed.
"""

__version__ = "0.1.0"

# Archive
from forge.archive import Archive, ArchiveKind, ArchiveRecord, SqlArchive

# Classification
from forge.classifier import Classification, ClassificationMethod, TaskClassifier, TaskType

# Configuration
from forge.config import Settings

# Discovery and extraction
from forge.discovery import DiscoveryMode, FileCandidate, FileDiscovery, Priority, ProjectIndex
from forge.extractors import ArchitectureExtractor, ArchitectureSummary, Convention, PatternExtractor

# Errors
from forge.errors import (
    ArchiveUnavailable,
    ForgeError,
    HumanSyncExpired,
    MalformedExecutionReport,
    OracleUnavailable,
    QualityBlocked,
)

# Feedback and insights
from forge.feedback import ExecutionFeedback, ExecutionReport, FeedbackRecorder, compute_accuracy
from forge.human_sync import HumanSync, SyncState, SyncTrigger
from forge.insights import Insight, InsightGenerator, InsightReport
from forge.learning import HistoricalContext, LearningRetriever

# Core models
from forge.models import ContextPackageRecord, HumanSyncRequest, Task
from forge.package import ContextPackage, MustReadEntry
from forge.patterns import PatternTracker

# Preparation
from forge.preparation import PreparationOutcome, Preparer
from forge.quality import QualityGate, QualityReport, Verdict
from forge.state import TaskStatus

__all__ = [
    # Version
    "__version__",
    # Models
    "Task",
    "ContextPackageRecord",
    "HumanSyncRequest",
    "TaskStatus",
    # Config
    "Settings",
    # Errors
    "ForgeError",
    "OracleUnavailable",
    "ArchiveUnavailable",
    "QualityBlocked",
    "HumanSyncExpired",
    "MalformedExecutionReport",
    # Classification
    "TaskClassifier",
    "Classification",
    "ClassificationMethod",
    "TaskType",
    # Discovery
    "ProjectIndex",
    "FileDiscovery",
    "FileCandidate",
    "DiscoveryMode",
    "Priority",
    "PatternExtractor",
    "ArchitectureExtractor",
    "ArchitectureSummary",
    "Convention",
    # History
    "Archive",
    "ArchiveKind",
    "ArchiveRecord",
    "SqlArchive",
    "LearningRetriever",
    "HistoricalContext",
    # Packages
    "ContextPackage",
    "MustReadEntry",
    "QualityGate",
    "QualityReport",
    "Verdict",
    "HumanSync",
    "SyncState",
    "SyncTrigger",
    "Preparer",
    "PreparationOutcome",
    # Feedback
    "ExecutionReport",
    "ExecutionFeedback",
    "FeedbackRecorder",
    "compute_accuracy",
    "PatternTracker",
    "InsightGenerator",
    "InsightReport",
    "Insight",
]
