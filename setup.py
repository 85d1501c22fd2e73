"""
convstream - Setup

Python client for real-time agent conversations.
"""

from setuptools import setup, find_packages
import os
import re

# Read the README
here = os.path.abspath(os.path.dirname(__file__))
with open(os.path.join(here, "README.md"), encoding="utf-8") as f:
    long_description = f.read()

# Read version
about = {}
with open(os.path.join(here, "convstream", "__init__.py"), encoding="utf-8") as f:
    for key, value in re.findall(r'^(__(?:version|author|license)__) = "([^"]*)"', f.read(), re.M):
        about[key] = value

setup(
    name="convstream",
    version=about["__version__"],
    author=about["__author__"],
    description="Real-time conversation protocol client for agent runtimes",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(include=["convstream", "convstream.*"]),
    python_requires=">=3.9",
    install_requires=[
        "httpx>=0.24.0",
        "websockets>=13.0",
        "pydantic>=2.0",
        "pydantic-settings>=2.0",
        "structlog>=23.1",
    ],
    extras_require={
        "dev": [
            "pytest>=7.0",
            "pytest-asyncio>=0.21",
            "pytest-cov>=4.0",
            "respx>=0.20",
        ],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: Communications :: Chat",
        "Topic :: Scientific/Engineering :: Artificial Intelligence",
        "Topic :: Software Development :: Libraries :: Python Modules",
        "Typing :: Typed",
    ],
    keywords=[
        "agent",
        "ai",
        "conversation",
        "websocket",
        "streaming",
        "llm",
        "citations",
    ],
    package_data={
        "convstream": ["py.typed"],
    },
    zip_safe=False,
)
