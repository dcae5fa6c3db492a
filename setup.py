from setuptools import setup, find_packages
import re

with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

with open("loadcheck/__init__.py", "r", encoding="utf-8") as f:
    version_match = re.search(r"^__version__ = ['\"]([^'\"]*)['\"]", f.read(), re.M)
    if version_match:
        version = version_match.group(1)
    else:
        raise RuntimeError("Unable to find version string in loadcheck/__init__.py")

setup(
    name="loadcheck",
    version=version,
    description="Concurrent load-test harness for HTTP + Socket.IO backends with CI pass/fail verdicts",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(include=["loadcheck", "loadcheck.*"]),
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "Topic :: Software Development :: Testing :: Traffic Generation",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
    python_requires=">=3.9",
    install_requires=[
        "pydantic>=2.0.0",
        "pydantic-settings>=2.7.0",  # NoDecode for comma-separated env lists
        "rich>=13.0.0",  # Live dashboard and summary panel
        "python-dotenv>=0.19.0",  # For environment variables
        "httpx>=0.27.0",
        "websockets>=13.0",  # websockets.asyncio client
        "psutil>=5.9.0",  # Harness resource sampling
    ],
    extras_require={
        "dev": [
            "pytest>=7.0.0",
            "pytest-asyncio>=0.21.0",
            "black>=22.0.0",
            "isort>=5.10.0",
            "mypy>=1.0.0",
        ],
        "test": [
            "pytest>=7.0.0",
            "pytest-asyncio>=0.21.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "loadcheck=loadcheck.cli:main",
        ],
    },
)
