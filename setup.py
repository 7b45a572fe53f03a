# Multiterm Setup

from setuptools import setup, find_packages

setup(
    name="multiterm",
    version="1.0.0",
    packages=find_packages(include=["multiterm", "multiterm.*"]),
    install_requires=[
        "pydantic>=2.5.0",
        "pydantic-settings>=2.1.0",
        "redis>=5.0.0",
        "websockets>=14.0",
        "httpx>=0.27.0",
        "prometheus-client>=0.19.0",
        "rich>=13.0.0",
    ],
    extras_require={
        "test": [
            "pytest>=8.0.0",
            "pytest-asyncio>=0.23.0",
        ],
    },
    python_requires=">=3.11",
)
