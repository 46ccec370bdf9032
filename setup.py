from setuptools import find_packages, setup

setup(
    name="ci-pipeline-runner",
    version="0.1.0",
    packages=find_packages(
        include=[
            "ci_common",
            "ci_common.*",
            "ci_persistence",
            "ci_persistence.*",
            "ci_controller",
            "ci_controller.*",
            "ci_client",
            "ci_client.*",
        ]
    ),
    install_requires=[
        "aiosqlite>=0.19.0",
        "click>=8.1.0",
        "PyYAML>=6.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.21.0",
            "pytest-xdist>=3.3.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "ci=ci_client.cli:main",
        ],
    },
    python_requires=">=3.11",
)
