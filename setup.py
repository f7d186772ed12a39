"""
Setup file.
"""

import os

from setuptools import setup

URL = "https://github.com/zackees/crosspack"
KEYWORDS = "rust cargo cross-compile packaging msys2 wine mingw musl toolchain"
HERE = os.path.dirname(os.path.abspath(__file__))



if __name__ == "__main__":
    setup(
        maintainer="Zachary Vorhies",
        keywords=KEYWORDS,
        url=URL,
        include_package_data=True)
