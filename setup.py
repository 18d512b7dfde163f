"""
Setup configuration for powersched package.
"""

from setuptools import setup, find_packages
from pathlib import Path

# Read the README file
this_directory = Path(__file__).parent
long_description = (this_directory / "README.md").read_text() if (this_directory / "README.md").exists() else ""

setup(
    name="powersched",
    version="0.1.0",
    description="Run commands periodically, but only while the machine is on external power",
    long_description=long_description,
    long_description_content_type="text/markdown",

    # Package discovery
    packages=find_packages(include=["powersched", "powersched.*"]),

    # Dependencies
    install_requires=[
        "APScheduler>=3.10.0,<4",
        "psutil>=5.9.0",
        "python-dotenv>=1.0.0",
    ],

    # Optional dependencies
    extras_require={
        "dev": [
            "pytest>=7.4.0",
            "black>=23.0.0",
            "flake8>=6.0.0",
        ],
    },

    # Python version requirement (tomllib)
    python_requires=">=3.11",

    # CLI entry points
    entry_points={
        "console_scripts": [
            "powersched=powersched.cli:main",
        ],
    },

    # Classification
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Environment :: No Input/Output (Daemon)",
        "Intended Audience :: System Administrators",
        "Topic :: System :: Power (UPS)",
        "Topic :: Utilities",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],

    # Keywords
    keywords="scheduler battery power cron daemon",
)
