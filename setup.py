from setuptools import setup, find_packages

setup(
    name="rollout-control-plane",
    version="0.1.0",
    packages=find_packages(exclude=["tests", "tests.*", "migrations", "migrations.*"]),
    install_requires=[
        "fastapi>=0.104.1",
        "uvicorn>=0.24.0",
        "sqlalchemy>=2.0.23",
        "alembic>=1.13.1",
        "pydantic>=2.5.0",
        "pydantic-settings>=2.1.0",
        "python-dotenv>=1.0.0",
        "kubernetes>=28.1.0",
        "requests>=2.31.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.4.3",
            "pytest-asyncio>=0.21.1",
            "httpx>=0.25.2",
        ],
    },
    python_requires=">=3.11",
)
