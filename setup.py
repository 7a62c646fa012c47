"""
Setup script for QueryGate

Install:
    pip install -e .

With test dependencies:
    pip install -e ".[test]"

Run:
    uvicorn querygate.main:app
"""

from setuptools import setup, find_packages

setup(
    name="querygate",
    version="1.0.0",
    description="Secure query gateway with schema introspection for PostgreSQL, MySQL and MongoDB",
    packages=find_packages(include=["querygate", "querygate.*"]),
    python_requires=">=3.9",
    install_requires=[
        "fastapi>=0.100.0",
        "uvicorn>=0.23.0",
        "pydantic>=2.0.0",
        "pydantic-settings>=2.0.0",
        "redis>=4.5.0",
        "cryptography>=41.0.0",
        "psycopg2-binary>=2.9.0",
        "mysql-connector-python>=8.0.0",
        "pymongo>=4.0.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0.0",
            "httpx>=0.25.0",
        ],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: Apache Software License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: Database",
        "Framework :: FastAPI",
    ],
)
