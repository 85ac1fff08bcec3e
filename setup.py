################################################################################
# DOCKYARD
#
# @file:        setup.py
# @module:      setup
# @description: Setuptools configuration and CLI packaging for Dockyard.
# @repository:  https://github.com/aig787/dockyard
# @version:     0.2.0
#
# ------------------------------------------------------------------------------
# MIT License: see LICENSE or https://opensource.org/licenses/MIT
# ==============================================================================
# Notes:
# - Single console script `dockyard` (typer app in dockyard.cli.main)
# - croniter drives the watch loop schedule
################################################################################

from setuptools import setup, find_packages
from pathlib import Path

# Read README for long description (optional)
readme_file = Path(__file__).parent / "README.md"
long_description = ""
if readme_file.exists():
    long_description = readme_file.read_text(encoding="utf-8")

setup(
    name="dockyard",
    version="0.2.0",
    description="Back up and restore Docker containers, volumes and bind mounts",
    long_description=long_description,
    long_description_content_type="text/markdown",
    author="Dockyard Contributors",
    author_email="",
    url="https://github.com/aig787/dockyard",
    project_urls={
        "Source": "https://github.com/aig787/dockyard",
        "Issues": "https://github.com/aig787/dockyard/issues",
    },
    license="MIT",

    packages=find_packages(exclude=("tests*", "docs*", "examples*")),

    include_package_data=True,
    zip_safe=False,

    python_requires=">=3.10",

    install_requires=[
        "psutil>=5.9.0",
        "typer>=0.12.0",
        "rich>=13.0.0",
        "pydantic>=2.0.0",
        "docker>=7.0.0",
        "jsonschema>=4.21.0",
        "croniter>=2.0.0",
    ],

    extras_require={
        "dev": [
            "pytest>=7.0.0",
            "pytest-cov>=3.0.0",
        ],
    },

    entry_points={
        "console_scripts": [
            "dockyard=dockyard.cli.main:cli_main",
        ],
    },

    classifiers=[
        "Development Status :: 4 - Beta",
        "Environment :: Console",
        "Intended Audience :: System Administrators",
        "License :: OSI Approved :: MIT License",
        "Operating System :: POSIX :: Linux",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3 :: Only",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: System :: Archiving :: Backup",
        "Topic :: System :: Systems Administration",
    ],

    keywords="docker backup restore volumes bind-mounts cron",
)
