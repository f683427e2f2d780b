import json
import logging

from batch_job_engine.utils.logger import (
    JobContextFilter,
    LoggerContext,
    StructuredFormatter,
    clear_log_context,
    get_log_context,
    set_log_context,
)


def make_record(message="chunk committed", **extra):
    record = logging.LogRecord("batch_job_engine.core.step", logging.INFO, __file__, 10, message, (), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_logger_context_is_restored_on_exit():
    clear_log_context()
    set_log_context(job_name="importCustomers")

    with LoggerContext(step_name="customerStep", step_execution_id=7):
        assert get_log_context() == {"job_name": "importCustomers", "step_name": "customerStep", "step_execution_id": 7}

    assert get_log_context() == {"job_name": "importCustomers"}
    clear_log_context()


def test_filter_adds_context_without_overriding_extra():
    record = make_record(job_name="explicit")
    with LoggerContext(job_name="fromContext", job_execution_id=3):
        JobContextFilter().filter(record)

    assert record.job_name == "explicit"
    assert record.job_execution_id == 3


def test_structured_formatter_emits_json_with_extra_fields():
    record = make_record(read_count=10)
    entry = json.loads(StructuredFormatter().format(record))

    assert entry["level"] == "INFO"
    assert entry["logger"] == "batch_job_engine.core.step"
    assert entry["message"] == "chunk committed"
    assert entry["extra"] == {"read_count": 10}
