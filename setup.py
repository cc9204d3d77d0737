"""Setup script for the Agency Membership Ledger."""

from setuptools import setup, find_packages

setup(
    name="agency-ledger",
    version="1.0.0",
    description="Agency membership and verification lifecycle engine",
    author="ML Roadmap Bootcamp",
    python_requires=">=3.10",
    packages=find_packages(include=["agency_ledger", "agency_ledger.*"]),
    package_data={"agency_ledger.database": ["migrations/script.py.mako"]},
    install_requires=[
        line.strip()
        for line in open("requirements.txt")
        if line.strip() and not line.startswith("#") and not line.startswith("git+")
    ],
    extras_require={
        "test": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.23.0",
            "pytest-mock>=3.12.0",
            "aiosqlite>=0.19.0",
        ],
        "dev": [
            "black>=23.0.0",
            "isort>=5.12.0",
            "flake8>=6.0.0",
            "mypy>=1.4.0",
            "pytest-cov>=4.1.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "agency-ledger-api=agency_ledger.api.main:run",
            "agency-ledger-outbox=agency_ledger.workers.outbox_publisher:main",
            "agency-ledger-maintenance=agency_ledger.workers.maintenance_worker:main",
        ]
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Framework :: FastAPI",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
)
