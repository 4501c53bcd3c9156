"""Setup script for Native Payments."""

from setuptools import setup, find_packages

setup(
    name="native-payments",
    version="1.0.0",
    description=(
        "Multi-provider payment service with subscription billing, retry/backoff, "
        "memberships and revenue analytics"
    ),
    author="Native Payments",
    python_requires=">=3.10",
    packages=find_packages(exclude=["tests", "tests.*"]),
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
            "native-payments-api=native_payments.api.main:run",
            "native-payments-billing=native_payments.workers.billing_worker:main",
            "native-payments-outbox=native_payments.workers.outbox_publisher:main",
            "native-payments-snapshots=native_payments.workers.snapshot_worker:main",
        ]
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Financial and Insurance Industry",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
)
