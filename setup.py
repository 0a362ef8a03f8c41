from setuptools import setup, find_packages

setup(
    name="ajo-ledger-cache",
    version="0.1.0",
    packages=find_packages(exclude=["tests", "tests.*", "examples"]),
    py_modules=["api"],
    install_requires=[
        "fastapi",
        "uvicorn",
        "pydantic>=2",
        "pydantic-settings",
        "structlog",
        "prometheus-client",
    ],
    extras_require={
        "test": [
            "pytest",
            "pytest-asyncio",
            "httpx",
        ],
    },
    python_requires=">=3.8",
    entry_points={
        "console_scripts": [
            "ledger-cache-diagnostics=api:main",
        ],
    }
)
