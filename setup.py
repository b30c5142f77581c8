import setuptools
from setuptools import find_packages

with open("readme.md", "r") as fh:
    long_description = fh.read()


vars2find = ["__author__", "__version__", "__url__"]
vars2readme = {}
with open("./openedx_snapshot/__init__.py") as f:
    for line in f.readlines():
        for v in vars2find:
            if line.startswith(v):
                line = line.replace(" ", "").replace('"', "").replace("'", "").strip()
                vars2readme[v] = line.split("=", 1)[1]

core_deps = [
    "aioboto3",
    "pydantic>=2.0",
    "pydantic-settings>=2.0",
]

setuptools.setup(
    name="openedx-snapshot",
    url=vars2readme["__url__"],
    version=vars2readme["__version__"],
    author=vars2readme["__author__"],
    description="Timestamped MySQL + MongoDB snapshots of a Tutor Open edX platform, stored in S3",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(include=["openedx_snapshot", "openedx_snapshot.*"]),
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: MIT License",
        "Operating System :: POSIX :: Linux",
    ],
    python_requires=">=3.11.4",
    install_requires=core_deps,
    extras_require={
        "test": [
            "pytest",
            "pytest-asyncio",
        ],
    },
    entry_points={
        "console_scripts": [
            "openedx-snapshot=openedx_snapshot.cli:main",
        ],
    },
)
