#!/bin/usr/env python3
###############################################################################
# dualdecomp: scenario DUAL DECOMPosition for stochastic programs in Python
#
# Copyright (c) 2024, Lawrence Livermore National Security, LLC, Alliance for
# Sustainable Energy, LLC, The Regents of the University of California, et al.
# All rights reserved. Please see the files COPYRIGHT.md and LICENSE.md for
# full copyright and license information.
###############################################################################
from setuptools import find_packages, setup
from pathlib import Path

packages = find_packages(include=["dualdecomp", "dualdecomp.*"])

this_directory = Path(__file__).parent
long_description = (this_directory / "README.rst").read_text()

setup(
    name='dualdecomp',
    version='0.1.0.dev0',
    description="dualdecomp",
    long_description=long_description,
    packages=packages,
    python_requires='>=3.9',
    install_requires=[
        'sortedcollections',
        'numpy',
        'scipy',
        'pandas',
        'pyomo>=6.4',
    ],
    extras_require={
        'test': [
            'pytest',
            'highspy',
        ],
        'doc': [
            'sphinx_rtd_theme',
            'sphinx',
        ]
    },
)
