#!/usr/bin/env python
import codecs
import os.path
import re

from setuptools import find_packages, setup

here = os.path.abspath(os.path.dirname(__file__))


def read(*parts):
    return codecs.open(os.path.join(here, *parts), "r", encoding="utf-8").read()


def find_version(*file_paths):
    version_file = read(*file_paths)
    version_match = re.search(r"^__version__ = ['\"]([^'\"]*)['\"]", version_file, re.M)
    if version_match:
        return version_match.group(1)
    raise RuntimeError("Unable to find version string.")


requires = ["awscrt>=0.23.10,<1.0"]

test_requires = ["pytest>=8.0", "freezegun>=1.5"]

setup(
    name="cloud-sdk-signers",
    version=find_version("src", "cloud_sdk_signers", "__init__.py"),
    description=(
        "Credential resolution and request signing for AWS and Azure storage "
        "REST APIs"
    ),
    long_description=read("README.md"),
    long_description_content_type="text/markdown",
    keywords="python aws azure sigv4 sigv2 sas signing credentials",
    scripts=[],
    package_dir={"": "src"},
    packages=find_packages(where="src", exclude=["tests*"]),
    include_package_data=True,
    install_requires=requires,
    extras_require={"test": test_requires},
    python_requires=">=3.11",
    license="Apache License 2.0",
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "Natural Language :: English",
        "License :: OSI Approved :: Apache Software License",
        "Operating System :: OS Independent",
        "Programming Language :: Python",
        "Programming Language :: Python :: 3 :: Only",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.12",
        "Programming Language :: Python :: 3.13",
        "Programming Language :: Python :: Implementation :: CPython",
        "Topic :: Software Development :: Libraries",
    ],
)
