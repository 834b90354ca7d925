"""Set up the gitd package."""
import json
from pathlib import Path

from setuptools import find_packages, setup

DESCRIPTION = (
    "A Git smart HTTP server that serves local repositories"
    " through git-upload-pack and git-receive-pack."
)

REQUIREMENTS = [
    "fastapi>=0.100.0",
    "pydantic>=2.6.1",
    "python-dotenv>=0.19.0",
    "pyyaml",
    "uvicorn>=0.29.0",
    "prometheus-client>=0.21.0",
]

ROOT_DIR = Path(__file__).parent.resolve()
README_FILE = ROOT_DIR / "README.md"
LONG_DESCRIPTION = README_FILE.read_text(encoding="utf-8")
VERSION_FILE = ROOT_DIR / "gitd" / "VERSION"
VERSION = json.loads(VERSION_FILE.read_text(encoding="utf-8"))["version"]


setup(
    name="gitd",
    version=VERSION,
    description=DESCRIPTION,
    long_description=LONG_DESCRIPTION,
    long_description_content_type="text/markdown",
    license="MIT",
    packages=find_packages(exclude=["tests", "tests.*"]),
    package_data={"gitd": ["VERSION"]},
    python_requires=">=3.9",
    include_package_data=True,
    install_requires=REQUIREMENTS,
    extras_require={
        "test": [
            "pytest>=7.0",
            "pytest-asyncio>=0.21.0",
            "requests>=2.26.0",
            "httpx>=0.21.1",
        ],
    },
    zip_safe=False,
    entry_points={"console_scripts": ["gitd = gitd.__main__:main"]},
)
