"""Sandbox synchronization and admission auditing.

- Readiness barrier across loops, with a version counter per flip
- Mutual exclusion over the sandboxed crypto resource
- Hash-chained admission audit log
"""

from .audit import AdmissionAuditLog, verify_chain
from .controller import SandboxController, SandboxPolicy, SandboxSnapshot

__all__ = [
    "AdmissionAuditLog",
    "SandboxController",
    "SandboxPolicy",
    "SandboxSnapshot",
    "verify_chain",
]
