"""Setup script for the Payment Reconciliation Engine."""

from setuptools import setup, find_packages

setup(
    name="payment_reconciliation",
    version="0.1.0",
    description="Exactly-once reconciliation of Paystack charges into a local payment ledger",
    author="ML Roadmap Bootcamp",
    python_requires=">=3.10",
    packages=find_packages(include=["payment_reconciliation", "payment_reconciliation.*"]),
    install_requires=[
        line.strip()
        for line in open("requirements.txt")
        if line.strip() and not line.startswith("#") and not line.startswith("git+")
    ],
    extras_require={
        "test": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.23.0",
            "pytest-cov>=4.1.0",
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
            "payment-reconciliation=payment_reconciliation.api.main:run",
        ]
    },
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Financial and Insurance Industry",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
)
