"""Setup configuration for ServiceM8 Submission Sync."""

from setuptools import setup

setup(
    name="servicem8_sync",
    version="1.0.0",
    description="ServiceM8 Submission Sync - form submissions to ServiceM8 jobs, contacts and attachments",
    author="Mark Lerner",
    py_modules=["servicem8_sync", "badge_cache", "log_capture"],
    python_requires=">=3.10",
    install_requires=[],
    extras_require={
        "test": [
            "pytest>=7.4.3",
            "pytest-cov>=4.1.0",
            "pytest-mock>=3.12.0",
            "pytest-xdist>=3.5.0",
            "pytest-timeout>=2.2.0",
        ],
    },
    entry_points={
        "console_scripts": ["servicem8-sync=servicem8_sync:main"],
    },
)
