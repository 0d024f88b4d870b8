"""Package setup for International Payment Compliance Engine."""

from setuptools import setup, find_packages

setup(
    name="intl-payment-compliance",
    version="1.0.0",
    author="Taofik Bishi",
    description="Currency conversion, cross-border tax and regulatory screening for international payments",
    long_description=open("README.md", encoding="utf-8").read(),
    long_description_content_type="text/markdown",
    url="https://github.com/taofikbishi/intl-payment-compliance",
    packages=find_packages(exclude=["tests", "tests.*", "examples"]),
    python_requires=">=3.10",
    install_requires=[
        "rich>=13.0",
        "pandas>=2.0",
        "httpx>=0.27",
        "pydantic>=2.0",
        "tenacity>=8.2",
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
            "pytest-asyncio>=0.23",
        ],
    },
    entry_points={
        "console_scripts": [
            "intl-pay=intl_payments.cli:main",
        ],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Financial and Insurance Industry",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: Office/Business :: Financial :: Accounting",
    ],
    keywords="vat gst sales-tax currency kyc sanctions gdpr payments compliance",
)
