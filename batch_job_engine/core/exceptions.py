"""
Exception classes for the batch job engine

Provides the hierarchy of exceptions raised while launching jobs, running
chunk-oriented steps and talking to the execution metadata store.
"""

from typing import Optional, Dict, Any, List


class BatchEngineError(Exception):
    """Base exception for all batch engine errors."""

    def __init__(self, message: str, error_code: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for JSON serialization."""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "error_code": self.error_code,
            "details": self.details
        }


# Launch errors: raised synchronously, before any step runs

class JobLaunchError(BatchEngineError):
    """Base class for errors raised while launching a job."""

    def __init__(self, message: str, error_code: str = "JOB_LAUNCH_ERROR", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, error_code=error_code, details=details)


class NoSuchJobError(JobLaunchError):
    """Raised when a job name is not present in the registry."""

    def __init__(self, job_name: str):
        super().__init__(
            f"No job registered under the name '{job_name}'",
            error_code="NO_SUCH_JOB",
            details={"job_name": job_name}
        )


class JobExecutionAlreadyRunningError(JobLaunchError):
    """Raised when the job instance already has an execution in a non-terminal state."""

    def __init__(self, job_name: str, job_execution_id: int, status: str):
        super().__init__(
            f"A job execution for '{job_name}' is already running (execution {job_execution_id}, status {status})",
            error_code="JOB_ALREADY_RUNNING",
            details={"job_name": job_name, "job_execution_id": job_execution_id, "status": status}
        )


class JobRestartError(JobLaunchError):
    """Raised when the requested launch would be an incompatible restart."""

    def __init__(self, job_name: str, message: str, error_code: str = "JOB_RESTART_ERROR"):
        super().__init__(
            f"Cannot restart job '{job_name}': {message}",
            error_code=error_code,
            details={"job_name": job_name}
        )


class JobInstanceAlreadyCompleteError(JobRestartError):
    """Raised when a completed job instance may not be run again."""

    def __init__(self, job_name: str, job_instance_id: int):
        super().__init__(
            job_name,
            f"instance {job_instance_id} already completed and the job forbids completed reruns",
            error_code="JOB_INSTANCE_COMPLETE"
        )
        self.details["job_instance_id"] = job_instance_id


class JobParametersInvalidError(JobLaunchError):
    """Raised when job parameters fail validation."""

    def __init__(self, job_name: str, message: str, missing: Optional[List[str]] = None):
        super().__init__(
            f"Invalid parameters for job '{job_name}': {message}",
            error_code="JOB_PARAMETERS_INVALID",
            details={"job_name": job_name, "missing": missing or []}
        )


# Operator errors

class NoSuchJobExecutionError(BatchEngineError):
    """Raised when a job execution id is unknown."""

    def __init__(self, job_execution_id: int):
        super().__init__(
            f"Job execution {job_execution_id} not found",
            error_code="NO_SUCH_JOB_EXECUTION",
            details={"job_execution_id": job_execution_id}
        )


class JobExecutionNotRunningError(BatchEngineError):
    """Raised when stopping an execution that is not running."""

    def __init__(self, job_execution_id: int, status: str):
        super().__init__(
            f"Job execution {job_execution_id} is not running (status {status})",
            error_code="JOB_EXECUTION_NOT_RUNNING",
            details={"job_execution_id": job_execution_id, "status": status}
        )


# Item-level and chunk-level errors

class ItemReadError(BatchEngineError):
    """Raised when the reader cannot produce the next item."""

    def __init__(self, message: str, position: Optional[int] = None, raw: Optional[str] = None):
        super().__init__(
            f"Item read failed: {message}",
            error_code="ITEM_READ_ERROR",
            details={"position": position, "raw": raw}
        )


class ItemProcessError(BatchEngineError):
    """Raised when the processor rejects an item."""

    def __init__(self, message: str, item: Any = None):
        super().__init__(
            f"Item processing failed: {message}",
            error_code="ITEM_PROCESS_ERROR",
            details={"item": repr(item) if item is not None else None}
        )


class ItemWriteError(BatchEngineError):
    """Raised when the writer rejects a batch."""

    def __init__(self, message: str, batch_size: Optional[int] = None):
        super().__init__(
            f"Item write failed: {message}",
            error_code="ITEM_WRITE_ERROR",
            details={"batch_size": batch_size}
        )


class SkipLimitExceededError(BatchEngineError):
    """Raised when more items were skipped than the skip policy allows."""

    def __init__(self, skip_limit: int, cause: Optional[BaseException] = None):
        super().__init__(
            f"Skip limit of {skip_limit} exceeded",
            error_code="SKIP_LIMIT_EXCEEDED",
            details={"skip_limit": skip_limit, "cause": str(cause) if cause else None}
        )


class RetryLimitExceededError(BatchEngineError):
    """Raised when a chunk still fails after the configured attempts."""

    def __init__(self, operation: str, attempts: int, cause: Optional[BaseException] = None):
        super().__init__(
            f"Operation '{operation}' failed after {attempts} attempts: {cause}",
            error_code="RETRY_LIMIT_EXCEEDED",
            details={"operation": operation, "attempts": attempts}
        )


# Infrastructure errors

class OrchestratorError(BatchEngineError):
    """Raised when the orchestrator is used outside its start()/stop() lifecycle."""

    def __init__(self, message: str):
        super().__init__(message, error_code="ORCHESTRATOR_ERROR")


class ExecutionStoreError(BatchEngineError):
    """Raised when the execution metadata store fails."""

    def __init__(self, operation: str, message: str, table: Optional[str] = None):
        super().__init__(
            f"Execution store operation '{operation}' failed: {message}",
            error_code="EXECUTION_STORE_ERROR",
            details={"operation": operation, "table": table}
        )


class ConfigurationError(BatchEngineError):
    """Raised when there's an error in configuration."""

    def __init__(self, config_key: str, message: str):
        super().__init__(
            f"Configuration error for {config_key}: {message}",
            error_code="CONFIGURATION_ERROR",
            details={"config_key": config_key}
        )


class ErrorRegistry:
    """Registry for tracking and analyzing errors."""

    def __init__(self):
        self.error_counts = {}

    def record_error(self, error: BaseException):
        """Record an error for analysis."""
        error_type = error.__class__.__name__
        self.error_counts[error_type] = self.error_counts.get(error_type, 0) + 1

    def get_error_statistics(self) -> Dict[str, Any]:
        """Get error statistics for monitoring."""
        return {
            "total_errors": sum(self.error_counts.values()),
            "error_counts": self.error_counts,
            "most_common_error": max(self.error_counts.items(), key=lambda x: x[1])[0] if self.error_counts else None
        }

    def reset(self):
        self.error_counts.clear()


# Global error registry instance
error_registry = ErrorRegistry()
