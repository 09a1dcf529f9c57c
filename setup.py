"""
DocLock setup.py — Package configuration and CLI entry point.
"""

from setuptools import find_packages, setup

setup(
    name="doclock",
    version="1.0.0",
    description="DocLock — personal document vault backend",
    packages=find_packages(include=["doclock", "doclock.*"]),
    python_requires=">=3.11",
    entry_points={
        "console_scripts": [
            "doclock=doclock.cli:main",
        ],
    },
    install_requires=[
        "sqlalchemy>=2.0",
        "pydantic>=2.5",
        "bcrypt>=4.1",
        "cryptography>=42.0",
        "pyyaml>=6.0",
        "qrcode[pil]>=7.4",
        "Pillow>=10.0",
    ],
    extras_require={
        "postgres": ["psycopg2-binary>=2.9"],
        "test": ["pytest>=8.0"],
    },
)
