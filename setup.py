"""
Setup Configuration for eosmc
=============================

Key Features:
- Tiered dependency groups (test, dev)
- CLI entry point registration
"""

import sys
from pathlib import Path

from setuptools import find_packages, setup

# Get the directory containing setup.py
HERE = Path(__file__).parent.resolve()


def read_readme():
    """Read README file for long description."""
    readme_path = HERE / "README.md"
    if readme_path.exists():
        return readme_path.read_text(encoding="utf-8")
    return "Markov chain and population Monte Carlo sampling of parameter posteriors"


def read_version():
    """Read version from eosmc/_version.py."""
    version_path = HERE / "eosmc" / "_version.py"
    with open(version_path, encoding="utf-8") as f:
        for line in f:
            if line.startswith("version"):
                return line.split("=")[1].strip().strip("\"'")
    return "0.0.0"


# Define dependency groups
INSTALL_REQUIRES = [
    "numpy>=1.24.0",
    "scipy>=1.10.0",
    "h5py>=3.8.0",
    "pyyaml>=6.0",
    "tqdm>=4.64.0",
    "arviz>=0.15.0,<1.0",
]

EXTRAS_REQUIRE = {
    # Test dependencies
    "test": [
        "pytest>=7.0.0",
    ],
    # Development dependencies
    "dev": [
        "pytest>=7.0.0",
        "pytest-cov>=4.0.0",
        "ruff>=0.1.0",
        "mypy>=1.0.0",
    ],
}

EXTRAS_REQUIRE["all"] = sorted(set(sum(EXTRAS_REQUIRE.values(), [])))

# Entry points for console scripts
ENTRY_POINTS = {
    "console_scripts": [
        "eosmc=eosmc.cli.main:main",
    ]
}

CLASSIFIERS = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Science/Research",
    "Topic :: Scientific/Engineering :: Physics",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Operating System :: OS Independent",
]

KEYWORDS = [
    "mcmc", "metropolis-hastings", "population monte carlo", "importance sampling",
    "bayesian", "posterior", "gelman-rubin", "scientific computing",
]


def check_python_version():
    """Check if Python version is supported."""
    if sys.version_info < (3, 10):
        print("Python 3.10 or higher is required")
        print(f"   Current version: {sys.version}")
        sys.exit(1)


if __name__ == "__main__":
    check_python_version()

    setup(
        name="eosmc",
        version=read_version(),
        description="Markov chain and population Monte Carlo sampling of parameter posteriors",
        long_description=read_readme(),
        long_description_content_type="text/markdown",
        packages=find_packages(exclude=["tests*", "docs*", "examples*"]),
        include_package_data=True,
        install_requires=INSTALL_REQUIRES,
        extras_require=EXTRAS_REQUIRE,
        python_requires=">=3.10",
        entry_points=ENTRY_POINTS,
        classifiers=CLASSIFIERS,
        keywords=" ".join(KEYWORDS),
        zip_safe=False,
    )
