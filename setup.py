"""Setup configuration for pgwr CLI tool"""

from setuptools import setup, find_packages

with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

setup(
    name="pgwr",
    version="0.1.0",
    author="UC Berkeley Codebase",
    author_email="your.email@example.com",
    description="PostgreSQL Workload Replay - rebuild client sessions from a server log and replay them concurrently",
    long_description=long_description,
    long_description_content_type="text/markdown",
    url="https://github.com/yourusername/pgwr",
    packages=find_packages(exclude=["tests", "tests.*"]),
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
    ],
    python_requires=">=3.8",
    install_requires=[
        "click>=8.0.0",
        "psycopg2-binary>=2.9",
        "sqlparse>=0.4.4",
        "PyYAML>=6.0",
        "python-dateutil>=2.8",
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "pgwr=pgwr.cli:cli",
        ],
    },
)
