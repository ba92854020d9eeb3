"""End-to-end encryption core for chat channels.

Modules are imported as ``e2ee.<module>``. Most callers only need
:class:`~e2ee.orchestrator.E2EEOrchestrator`, which is re-exported here.
"""

from .orchestrator import E2EEOrchestrator

__all__ = ["E2EEOrchestrator"]
