"""
Lecture Assistant job worker: setuptools build script.

Usage:
    # Development (editable install):
    pip install -e .

    # Run the worker:
    lectures-worker --config ~/.lectures/config.json
"""

from setuptools import setup, find_namespace_packages

APP_NAME = "lectures"

setup(
    name=APP_NAME,
    version="1.0.0",
    description="Background job engine for lecture transcription, document OCR and study material",
    packages=find_namespace_packages(include=["lectures", "lectures.*"]),
    py_modules=["main"],
    install_requires=[
        "requests>=2.28.0",
    ],
    extras_require={
        "test": ["pytest"],
    },
    python_requires=">=3.10",
    entry_points={
        "console_scripts": [
            "lectures-worker=main:main",
        ],
    },
)
