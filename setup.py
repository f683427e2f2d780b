"""
Setup script for Batch Job Engine

A chunk-oriented batch processing engine with restartable, PostgreSQL-backed
execution metadata, CSV import jobs, a CLI and an HTTP trigger.
"""

from setuptools import setup, find_packages
import pathlib

here = pathlib.Path(__file__).parent.resolve()

# Get the long description from the README file
try:
    long_description = (here / "README.md").read_text(encoding="utf-8")
except FileNotFoundError:
    long_description = """
    Batch Job Engine

    A chunk-oriented batch processing engine: jobs made of read/process/write
    steps, transactional chunk commits, restart from the last committed chunk,
    retry and skip policies, and parallel chunk processing.
    """

setup(
    name="batch-job-engine",
    version="1.0.0",
    description="Chunk-oriented, restartable batch job engine with CSV import jobs",
    long_description=long_description,
    long_description_content_type="text/markdown",
    author="Batch Job Engine Team",
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: Software Development :: Libraries :: Python Modules",
    ],
    keywords="batch processing, etl, chunk, restartable jobs, async",
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.10",
    install_requires=[
        # Core dependencies
        "asyncpg>=0.27.0",
        "click>=8.0.0",

        # Additional async and networking
        "aiofiles>=23.1.0",

        # Configuration and serialization
        "pyyaml>=6.0",
        "pydantic>=2.0.0",

        # HTTP trigger
        "fastapi>=0.95.0",
        "uvicorn>=0.20.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.0.0",
            "pytest-asyncio>=0.21.0",
            "httpx>=0.24.0",
            "black>=22.0.0",
            "isort>=5.10.0",
            "mypy>=1.0.0",
            "coverage>=6.0.0",
            "flake8>=5.0.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "batch-job-engine=batch_job_engine.cli.main:main",
            "bje=batch_job_engine.cli.main:main",
        ],
    },
    include_package_data=True,
    package_data={
        "batch_job_engine": [
            "sql/*.sql",
        ],
    },
)
