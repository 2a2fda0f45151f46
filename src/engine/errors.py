# src/engine/errors.py
"""
Error taxonomy for the job orchestrator. Each error carries the HTTP status
the API layer answers with.
"""


class OrchestratorError(Exception):
    status_code = 500

    def __init__(self, message: str = None):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__


class AdmissionError(OrchestratorError):
    """Raised synchronously by submit; no job record is created."""
    status_code = 400


class InvalidConfiguration(AdmissionError):
    status_code = 400


class EmptyTargetSet(AdmissionError):
    status_code = 400

    def __init__(self, message: str = "Either targets or asset_ids must resolve to at least one target"):
        super().__init__(message)


class CapacityExceeded(AdmissionError):
    status_code = 429

    def __init__(self, limit: int):
        super().__init__(
            f"Maximum concurrent jobs reached ({limit}). Please wait for existing jobs to complete."
        )
        self.limit = limit


class JobNotFound(OrchestratorError):
    status_code = 404

    def __init__(self, job_id: str):
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class InvalidState(OrchestratorError):
    status_code = 409

    def __init__(self, job_id: str, status: str, action: str):
        super().__init__(f"Job {job_id} cannot {action} while {status.lower()}")
        self.job_id = job_id
        self.status = status
        self.action = action
