from pathlib import Path

from setuptools import find_namespace_packages, setup

ROOT = Path(__file__).parent


def _long_description() -> str:
    readme = ROOT / "README.md"
    return readme.read_text(encoding="utf-8") if readme.exists() else ""


setup(
    name="solscout",
    version="0.1.0",
    description="Multi-source Solana token detection and filtering engine",
    long_description=_long_description(),
    long_description_content_type="text/markdown",
    python_requires=">=3.11",
    packages=find_namespace_packages(include=["solscout", "solscout.*"]),
    install_requires=[
        "aiohttp>=3.9",
        "cachetools>=5.3",
        "pydantic>=2.5",
        "solana>=0.34",
        "solders>=0.21",
        "websockets>=12",
    ],
    extras_require={
        "test": [
            "pytest>=7.4",
            "anyio>=4.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "solscout=solscout.cli:main",
        ],
    },
)
