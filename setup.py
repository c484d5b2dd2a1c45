#!/usr/bin/env python3
"""
Setup script for the Neutron floating IP controller.
"""

from setuptools import setup, find_packages

with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

with open("requirements.txt", "r", encoding="utf-8") as fh:
    requirements = [line.strip() for line in fh if line.strip() and not line.startswith("#")]

packages = find_packages(where=".", include=["fip_controller", "fip_controller.*"])

setup(
    name="neutron-fip-controller",
    version="0.1.0",
    author="Neutron FIP Controller Project",
    description="Reconciles floating IP and port resources of a cluster against OpenStack Neutron",
    long_description=long_description,
    long_description_content_type="text/markdown",
    license="Apache-2.0",
    packages=packages,
    package_dir={"": "."},
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: System Administrators",
        "License :: OSI Approved :: Apache Software License",
        "Operating System :: POSIX :: Linux",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.8",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
    ],
    python_requires=">=3.8",
    install_requires=requirements,
    extras_require={
        "test": [
            "pytest>=7.0",
            "httpx>=0.23",
        ],
    },
    entry_points={
        "console_scripts": [
            "fipctl=fip_controller.cli.cli:main",
        ],
        "oslo.config.opts": [
            "fip_controller=fip_controller.configuration:list_opts",
        ],
    },
)
