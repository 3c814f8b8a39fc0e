#!/usr/bin/env python

from setuptools import find_packages, setup

NAME = 'scikit-downscaler'
VERSION = '0.1.0'
CLASSIFIERS = [
    'Development Status :: 2 - Pre-Alpha',
    'License :: OSI Approved :: Apache Software License',
    'Operating System :: OS Independent',
    'Intended Audience :: Science/Research',
    'Programming Language :: Python',
    'Programming Language :: Python :: 3',
    'Programming Language :: Python :: 3.9',
    'Programming Language :: Python :: 3.10',
    'Programming Language :: Python :: 3.11',
    'Topic :: Scientific/Engineering',
    'Topic :: Scientific/Engineering :: Atmospheric Science',
]
PACKAGES = find_packages(exclude=['*test*'])

with open('requirements.txt') as f:
    install_requires = f.read().strip().split('\n')

TESTS_REQUIRE = ['pytest >= 2.7.1']

setup(
    name=NAME,
    version=VERSION,
    license='Apache',
    classifiers=CLASSIFIERS,
    description=(
        'Perfect-prognosis statistical downscaling of climate model predictors: '
        'matrix building, GLM, analog and neural network methods, and cross-validation.'
    ),
    python_requires='>=3.9',
    install_requires=install_requires,
    tests_require=TESTS_REQUIRE,
    extras_require={'test': TESTS_REQUIRE, 'dask': ['dask[array]']},
    packages=PACKAGES,
)
