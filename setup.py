"""Setup script for the PropIntel orchestration core."""

from setuptools import setup, find_packages

setup(
    name="propintel",
    version="0.1.0",
    packages=find_packages(exclude=("tests", "tests.*")),
    python_requires=">=3.10",
    install_requires=[
        "pydantic>=2.5",
        "pydantic-settings>=2.1",
        "structlog>=23.2",
        "prometheus-client>=0.19",
        "tenacity>=8.2",
        "asyncpg>=0.29",
        "langchain-core>=0.2",
        "langchain-ollama>=0.1",
    ],
    extras_require={
        "test": [
            "pytest>=7.4",
            "pytest-asyncio>=0.23",
        ],
    },
    description="PropIntel - execution planning and agent context management for AEO analysis jobs",
    author="PropIntel Team",
)
