"""
changeflow: phase-by-phase orchestration of a change across specialist workers

A change is instantiated from a template of ordered phases. Each phase is
dispatched to one worker, several workers in parallel, or a human; worker
output passes a validation gate, failures are retried with feedback, and
exhausted retries escalate to a human decision.
"""

__version__ = "0.1.0"

from changeflow.core.exceptions import ChangeflowError

__all__ = ["ChangeflowError", "__version__"]
