from setuptools import setup, find_packages

setup(
    name="llm-loop-guard",
    version="0.1.0",
    packages=find_packages(include=["loopguard", "loopguard.*"]),
    install_requires=[
        "pydantic>=2",
        "structlog",
        "json-repair",
        "python-dotenv",
        "PyYAML",
        "httpx",
        "psutil",
    ],
    extras_require={
        "test": [
            "pytest",
            "pytest-asyncio",
            "pytest-httpx",
        ],
    },
    description="Loop detection and local-model concurrency control for LLM agent sessions.",
    long_description=open("README.md", encoding="utf-8").read(),
    long_description_content_type="text/markdown",
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
    ],
    python_requires=">=3.10",
)
