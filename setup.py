from setuptools import setup, find_packages

setup(
    name="symharness",
    version="0.1.0",
    description="symharness: symbolic-execution harness synthesis for assertion-reaching functions",
    packages=find_packages(include=["symharness", "symharness.*"]),
    python_requires=">=3.10",
    install_requires=[
        "llvmlite>=0.44.0",
        "z3-solver>=4.12.0",
        "PyYAML>=6.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
            "hypothesis>=6.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "symharness=symharness.cli:main",
        ],
    },
)
