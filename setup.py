"""Setup configuration for marketctl."""

from setuptools import setup, find_packages

setup(
    name="marketctl",
    version="1.0.0",
    description="Job award coordination core for a bidding marketplace",
    packages=find_packages(include=["marketctl", "marketctl.*"]),
    install_requires=[
        "click>=8.1.7",
        "pydantic>=2.5.0",
        "pydantic-settings>=2.1.0",
    ],
    extras_require={
        "test": ["pytest>=7.4"],
    },
    entry_points={
        "console_scripts": [
            "marketctl=marketctl.cli:cli",
        ],
    },
    python_requires=">=3.9",
)
