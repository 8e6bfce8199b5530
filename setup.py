from setuptools import setup, find_packages

setup(
    name="stepgraph",
    version="0.1.0",
    package_dir={"": "src"},
    packages=find_packages("src", exclude=["tests", "tests.*"]),
    install_requires=[
        "pydantic>=2",
    ],
    extras_require={
        "test": [
            "pytest",
            "pytest-asyncio",
        ],
    },
    python_requires=">=3.9",
    # Add metadata for PyPI
    description="stateful graph execution engine with supersteps, checkpoints and a cross-thread store",
    long_description=open("README.md").read(),
    long_description_content_type="text/markdown",
)
