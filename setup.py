"""
Setup script for the Allen Brain Observatory Toolbox.
"""

from setuptools import setup, find_namespace_packages

setup(
    name='abo-toolbox',
    version='0.3.0',
    description='Query, cache and analyse Allen Brain Observatory ophys and ecephys data',
    python_requires='>=3.8',
    packages=find_namespace_packages(include=['abo_toolbox', 'abo_toolbox.*']),
    include_package_data=True,
    install_requires=[
        'numpy',
        'pandas>=1.3',
        'scipy',
        'tqdm',
        'requests',
        'h5py>=3.0',
    ],
    extras_require={
        'test': ['pytest'],
    },
    entry_points={
        'console_scripts': [
            'abo-toolbox=abo_toolbox.cli.main:main',
        ],
    },
)
