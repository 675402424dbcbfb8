"""Setup script for the tcplisten package."""

from setuptools import setup, find_packages

requires = [
    "acme>=2.0.0",
    "blinker>=1.4",
    "cryptography>=42.0.0",
    "josepy>=1.13.0",
    "trio>=0.22.0",
]

__version__ = None
exec(open("src/tcplisten/version.py").read())

setup(
    name="tcplisten",
    version=__version__,
    packages=find_packages("src"),
    package_dir={"": "src"},
    include_package_data=True,
    python_requires=">=3.9",
    install_requires=requires,
    extras_require={"test": ["pytest>=7.0", "pytest-trio>=0.8.0"]},
    test_suite="test",
)
