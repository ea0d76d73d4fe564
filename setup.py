"""Build the bsptools package."""
from setuptools import setup

setup()
