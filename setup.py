#!/usr/bin/env python3

import os
from setuptools import setup, find_packages

here = os.path.abspath(os.path.dirname(__file__))

readme_path = os.path.join(here, "README.md")
long_description = ""
if os.path.exists(readme_path):
    with open(readme_path, encoding="utf-8") as f:
        long_description = f.read()

version_path = os.path.join(here, "lamdock", "version.py")
version_dict = {}
with open(version_path) as f:
    exec(f.read(), version_dict)
__version__ = version_dict.get("__version__", "0.3.0")

# Core requirements
install_requires = []
req_path = os.path.join(here, "requirements.txt")
if os.path.exists(req_path):
    with open(req_path, encoding="utf-8") as f:
        install_requires = [
            line.strip() for line in f if not line.startswith("#") and line.strip()
        ]
else:
    install_requires = [
        "docker>=4.2.0",
        "requests",
        "boto3",
        "click>=7.1.2",
        "rich",
    ]

extras_require = {"test": ["pytest"]}

setup(
    name="lamdock",
    version=__version__,
    description="Run Lambda functions locally in Docker containers",
    long_description=long_description,
    long_description_content_type="text/markdown",
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.8",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Topic :: Software Development :: Testing",
        "Topic :: System :: Emulators",
    ],
    keywords="serverless, faas, lambda, docker, local, emulation",
    packages=find_packages(where=here, exclude=["tests", "tests.*"]),
    python_requires=">=3.8",
    install_requires=install_requires,
    extras_require=extras_require,
    entry_points={
        "console_scripts": [
            "lamdock=lamdock.cli:main",
        ],
    },
)
