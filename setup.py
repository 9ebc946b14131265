# Copyright © 2025 Leadpoet

import re
import os
import codecs
from os import path
from io import open
from setuptools import setup, find_packages


here = path.abspath(path.dirname(__file__))

with open(path.join(here, "README.md"), encoding="utf-8") as f:
    long_description = f.read()

with codecs.open(os.path.join(here, "relay/__init__.py"), encoding="utf-8") as init_file:
    version_match = re.search(r"^__version__ = ['\"]([^'\"]*)['\"]", init_file.read(), re.M)
    if not version_match:
        raise RuntimeError("Unable to find version string in relay/__init__.py")
    version_string = version_match.group(1)


requirements = [
    # HTTP and networking
    "httpx>=0.27.0",

    # Monitoring and metrics
    "prometheus_client>=0.19.0",

    # Retry and resilience
    "tenacity>=8.2.0",

    # Environment and configuration
    "python-dotenv>=1.0.0",

    # Web framework
    "starlette>=0.30.0",
    "pydantic>=2.0.0",
    "fastapi>=0.110.0",
    "uvicorn[standard]>=0.38.0",

    # Ledger signatures + TEE attestation verification
    "cbor2>=5.4.6",
    "cryptography>=41.0.7",
    "base58>=2.1.1",
]

test_requirements = [
    "pytest>=8.0.0",
    "pytest-mock>=3.10.0",
    "pytest-asyncio>=0.21.0",
]

setup(
    name="pm_relay",
    version=version_string,
    description="TEE-attested, gas-sponsored transaction relay for an on-chain prediction market",
    long_description=long_description,
    long_description_content_type="text/markdown",
    author="PM Relay Team",
    license="MIT",
    packages=find_packages(include=['relay', 'relay.*', 'relay_canonical', 'relay_canonical.*']),
    include_package_data=True,
    python_requires=">=3.9",
    install_requires=requirements,
    extras_require={"tests": test_requirements},
    entry_points={
        "console_scripts": [
            "pm-relay=relay.main:main",
        ]
    },
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3 :: Only",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Topic :: Internet :: WWW/HTTP",
        "Topic :: Security :: Cryptography",
    ],
)
