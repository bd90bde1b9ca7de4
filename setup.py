"""
Setup configuration for the Pool Event Indexer.
"""

from setuptools import setup, find_packages

with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

with open("requirements.txt", "r", encoding="utf-8") as fh:
    requirements = [line.strip() for line in fh if line.strip() and not line.startswith("#")]

setup(
    name="pool-event-indexer",
    version="0.1.0",
    author="Pool Event Indexer Team",
    description="Parallel, resumable indexer for staking pool contract events on EVM chains",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(include=["pool_event_indexer", "pool_event_indexer.*"]),
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
    python_requires=">=3.9",
    install_requires=requirements,
    extras_require={
        "dev": [
            "black>=23.0.0",
            "isort>=5.12.0",
            "flake8>=6.0.0",
            "mypy>=1.5.0",
            "pytest>=7.4.0",
            "pytest-asyncio>=0.21.0",
            "pytest-mock>=3.11.0",
            "pytest-cov>=4.1.0",
        ],
        "postgresql": ["psycopg2-binary>=2.9.0"],
    },
    entry_points={
        "console_scripts": [
            "pool-indexer=pool_event_indexer.cli:main",
        ],
    },
)
