from setuptools import setup, find_packages
import os

# Read requirements.txt
requirements_file = 'requirements.txt'
install_requires = []
if os.path.exists(requirements_file):
    with open(requirements_file, 'r') as f:
        install_requires = [line.strip() for line in f if line.strip() and not line.startswith('#')]

setup(
    name="solana_sniper_bundle",
    version="0.1.0",
    packages=find_packages(include=['solana_sniper_bundle', 'solana_sniper_bundle.*']),
    install_requires=install_requires,
    extras_require={
        'test': ['pytest>=7.0'],
    },
    author="Effie Choupette",
    author_email="effie_choupette@outlook.com",
    description="Solana new-pool sniper: discovery pipeline, safety gates and swap execution",
    long_description=open('README.md').read() if os.path.exists('README.md') else '',
    long_description_content_type="text/markdown",
    python_requires=">=3.9",
    package_data={
        'solana_sniper_bundle': ['*.yaml', '*.txt'],
    },
    include_package_data=True,
)
