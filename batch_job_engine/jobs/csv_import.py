"""
CSV import jobs.

Each job has two steps: a tasklet creating the target table (when a
database is configured) and a chunk step reading the CSV file, passing
every record through unchanged and upserting the chunk by id.
"""

from dataclasses import dataclass
from typing import Any, Callable, Optional

from ..models.job import JobParameters
from ..models.definitions import JobDefinition, JobParametersValidator, StepDefinition, TaskletStepDefinition
from ..models.execution import StepExecution
from ..items.base import ItemWriter
from ..items.readers import CsvItemReader
from ..items.processors import PassThroughItemProcessor
from ..items.writers import AsyncpgItemWriter
from ..core.registry import JobRegistry
from ..utils.config import EngineSettings
from ..utils.database import DatabaseManager
from .records import CUSTOMERS_DDL, STUDENTS_DDL, Customer, Student


INPUT_FILE_PARAMETER = "input.file"

WriterFactory = Callable[[JobParameters], ItemWriter]


@dataclass(frozen=True)
class CsvImport:
    """What one import job reads and where it writes it."""

    job_name: str
    step_name: str
    record_type: Any
    table: str
    ddl: str


CUSTOMER_IMPORT = CsvImport("importCustomers", "customerStep", Customer, "customers", CUSTOMERS_DDL)
STUDENT_IMPORT = CsvImport("importStudents", "studentStep", Student, "students", STUDENTS_DDL)

IMPORTS = (CUSTOMER_IMPORT, STUDENT_IMPORT)


def build_csv_import_job(
    definition: CsvImport,
    settings: EngineSettings,
    database_manager: Optional[DatabaseManager] = None,
    writer_factory: Optional[WriterFactory] = None
) -> JobDefinition:
    """
    Build an import job.

    Args:
        definition: Record type, table and names of the job
        settings: Chunk size, policies and the default input file
        database_manager: Target database; required unless writer_factory is given
        writer_factory: Replaces the asyncpg upsert writer

    The input file comes from the 'input.file' job parameter, falling back
    to the file configured for the job.
    """
    if writer_factory is None:
        if database_manager is None:
            raise ValueError("database_manager is required without a writer_factory")

        def writer_factory(parameters: JobParameters) -> ItemWriter:
            return AsyncpgItemWriter(
                database_manager,
                definition.table,
                definition.record_type.columns(),
                key_columns=("id",)
            )

    default_file = settings.input_files.get(definition.job_name)

    def reader_factory(parameters: JobParameters) -> CsvItemReader:
        path = parameters.get_string(INPUT_FILE_PARAMETER, default_file)
        if path is None:
            path = settings.input_file(definition.job_name)
        return CsvItemReader(
            path,
            mapper=definition.record_type.from_row,
            lines_to_skip=1,
            name=f"{definition.step_name}Reader"
        )

    steps = []
    if database_manager is not None:
        async def create_table(step_execution: StepExecution, parameters: JobParameters):
            await database_manager.execute_script(definition.ddl)

        steps.append(TaskletStepDefinition(
            name=f"create{definition.table.capitalize()}Table",
            tasklet=create_table,
            allow_start_if_complete=True
        ))

    steps.append(StepDefinition(
        name=definition.step_name,
        reader_factory=reader_factory,
        writer_factory=writer_factory,
        processor=PassThroughItemProcessor(),
        chunk_size=settings.chunk_size,
        retry_policy=settings.retry_policy(),
        skip_policy=settings.skip_policy(),
        parallel=settings.parallel_steps
    ))

    return JobDefinition(
        name=definition.job_name,
        steps=tuple(steps),
        validator=JobParametersValidator(optional_keys=frozenset({INPUT_FILE_PARAMETER, "time"})),
        description=f"Import {definition.table} from CSV"
    )


def build_registry(settings: EngineSettings, database_manager: Optional[DatabaseManager] = None) -> JobRegistry:
    """Registry holding the customer and student import jobs."""
    return JobRegistry(build_csv_import_job(d, settings, database_manager) for d in IMPORTS)
