#!/usr/bin/env python
# encoding: utf-8

from setuptools import setup

setup(
    name='pgfailover',
    version='1.0',
    description="Controlled failover of logically replicated PostgreSQL behind pgbouncer",
    long_description="Controlled failover of logically replicated PostgreSQL behind pgbouncer",
    license="PostgreSQL",
    platforms=["Linux", "BSD", "MacOS"],
    zip_safe=False,
    python_requires='>=3.10',
    packages=['pgfailover'],
    package_dir={'pgfailover': 'src'},
    install_requires=[
        'psycopg2',
        'kazoo',
        'lockfile',
        'PyYAML',
    ],
    extras_require={
        'test': [
            'behave',
            'parse_type',
            'PyYAML',
        ],
    },
    entry_points={
        'console_scripts': [
            'pgfailover = pgfailover.cli:entry',
        ]
    },
)
