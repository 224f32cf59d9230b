#!/usr/bin/env python3
"""
Setup configuration for cnpg-intent-mcp-server.

This allows the server to be installed as a Python package.
"""

from setuptools import setup
from pathlib import Path

# Read the README file
this_directory = Path(__file__).parent
long_description = (this_directory / "README.md").read_text()

# Read requirements
requirements = []
with open(this_directory / "requirements.txt") as f:
    requirements = [line.strip() for line in f if line.strip() and not line.startswith("#")]

setup(
    name="cnpg-intent-mcp-server",
    version="2.0.0",
    author="helxplatform",
    author_email="",
    description="Intent-driven MCP server for CloudNativePG clusters, backups and poolers in Kubernetes",
    long_description=long_description,
    long_description_content_type="text/markdown",
    url="https://github.com/helxplatform/cnpg-mcp",
    project_urls={
        "Bug Tracker": "https://github.com/helxplatform/cnpg-mcp/issues",
        "Documentation": "https://github.com/helxplatform/cnpg-mcp#readme",
        "Source Code": "https://github.com/helxplatform/cnpg-mcp",
    },
    license="MIT",
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "Intended Audience :: System Administrators",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: Database",
        "Topic :: System :: Systems Administration",
    ],
    keywords="postgresql postgres cloudnativepg cnpg kubernetes k8s database mcp backup pgbouncer",
    package_dir={"": "src"},
    py_modules=[
        "cnpg_config",
        "cnpg_dispatcher",
        "cnpg_errors",
        "cnpg_intents",
        "cnpg_manifests",
        "cnpg_mcp_server",
        "cnpg_patches",
        "cnpg_queries",
        "cnpg_resources",
        "cnpg_utils",
    ],
    python_requires=">=3.11",
    install_requires=requirements,
    entry_points={
        "console_scripts": [
            "cnpg-intent-mcp-server=cnpg_mcp_server:main",
        ],
    },
    extras_require={
        "dev": [
            "pytest>=7.0.0",
            "pytest-asyncio>=0.23.0",
            "black>=23.0.0",
            "flake8>=6.0.0",
            "mypy>=1.0.0",
        ],
    },
)
