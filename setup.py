from setuptools import setup, find_packages

setup(
    name="portbuild",
    version="0.1.0",
    description="Dependency resolver and parallel build scheduler for a source-based ports tree.",
    license="GPL-3.0",
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.8",
    install_requires=[
        "rich>=13.0.0",
        "PyYAML>=6.0",
        "psutil>=5.9",
    ],
    extras_require={
        "test": ["pytest>=7.0"],
    },
    entry_points={
        "console_scripts": [
            "portbuild=portbuild.modules.cli:main",
        ],
    },
)
