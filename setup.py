from setuptools import setup, find_packages

setup(
    name="live-call-triage",
    version="1.0.0",
    packages=find_packages(exclude=["tests*", "scripts*"]),
    package_data={"live_triage": ["flows/*.json"]},
    include_package_data=True,
    install_requires=[
        "pydantic>=2.0",
        "pydantic-settings>=2.0",
        "httpx>=0.24",
        "python-dotenv>=1.0",
        "openai>=1.0",
        "fastapi>=0.100",
        "uvicorn>=0.20",
        "websockets>=11.0",
    ],
    extras_require={
        "test": ["pytest>=7.0", "pytest-asyncio>=0.21"],
    },
    entry_points={
        "console_scripts": ["live-triage-server=live_triage.server:main"],
    },
    python_requires=">=3.9",
)
