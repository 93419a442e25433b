from setuptools import find_packages, setup

setup(
    name="genflow",
    version="1.0.0",
    description="Durable generation-workflow engine with checkpointing, pause/resume/cancel and retries",
    packages=find_packages(include=["genflow", "genflow.*"]),
    install_requires=[line for line in open("requirements-core.txt").read().splitlines() if line],
    extras_require={
        "test": ["pytest>=7.0", "pytest-asyncio>=0.21"],
    },
    python_requires=">=3.10",
    entry_points={
        "console_scripts": [
            "genflow=genflow.cli:main",
        ],
    },
)
