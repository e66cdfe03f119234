# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the Apache 2.0 License.

from os import path
from setuptools import setup  # type: ignore

PACKAGE_NAME = "swarmnet"
PACKAGE_VERSION = "0.1.0"

path_here = path.abspath(path.dirname(__file__))

with open(path.join(path_here, "README.md"), encoding="utf-8") as f:
    long_description = f.read()

with open(path.join(path_here, "requirements.txt"), encoding="utf-8") as f:
    requirements = f.read().splitlines()

setup(
    name=PACKAGE_NAME,
    version=PACKAGE_VERSION,
    description="Bootstrap local multi-node test networks with a wallet and a JSON-RPC gateway",
    long_description=long_description,
    long_description_content_type="text/markdown",
    license="Apache License 2.0",
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "Programming Language :: Python :: 3",
    ],
    packages=[PACKAGE_NAME],
    python_requires=">=3.8",
    install_requires=requirements,
    extras_require={"test": ["pytest"]},
    entry_points={
        "console_scripts": [
            "swarmnet_start_network = swarmnet.start_network:main",
        ]
    },
)
