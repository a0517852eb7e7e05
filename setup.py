"""Setup script for the meterble package."""

from setuptools import find_packages, setup

setup(
    name="meterble",
    version="0.1.0",
    description="BLE temperature/humidity meter decoding and connection handling",
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.9",
    install_requires=[
        "pyyaml",
        "python-dotenv",
        "paho-mqtt>=2.0.0",
        "bleak>=1.0.0",
        "rich",
    ],
    extras_require={
        "test": [
            "pytest",
            "pytest-asyncio",
        ],
        "dev": [
            "pytest",
            "pytest-asyncio",
            "black",
            "isort",
            "mypy",
        ],
    },
    entry_points={
        "console_scripts": [
            "meterble=meterble:main",
        ],
    },
)
