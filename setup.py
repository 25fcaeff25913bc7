#!/usr/bin/env python
#

from setuptools import setup

setup(
    name="asmail",
    version="0.3.0",
    description="An asyncio based IMAP client engine",
    long_description=(
        "asmail keeps one pipelined connection per mail account to an IMAP "
        "server, parses the server's responses in to python structures and "
        "threads messages by subject."
    ),
    author="Scanner",
    author_email="scanner@apricot.com",
    url="https://github.com/scanner/asmail",
    packages=["asmail"],
    py_modules=["asmail_cli"],
    python_requires=">=3.11",
    install_requires=[
        "aiofiles",
        "docopt",
        "keyring",
        "python-dotenv",
        "python-json-logger",
        "pytz",
        "sentry-sdk",
    ],
    extras_require={
        "test": [
            "dirty-equals",
            "factory_boy",
            "faker",
            "pytest",
            "pytest-asyncio",
            "pytest-mock",
            "trustme",
        ],
    },
    entry_points={
        "console_scripts": ["asmail=asmail_cli:main"],
    },
)
