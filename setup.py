import setuptools

with open("README.md", "r") as fh:
    long_description = fh.read()

version = {}
with open(r"acmesign/version.py") as fp:
    exec(fp.read(), version)

dependencies = [
    "acme>=2.0",
    "aiohttp>=3.8",
    "click>=8.0",
    "cryptography>=42.0",
    "dnspython>=2.3",
    "josepy>=1.13",
    "pydantic>=2.0",
    "pydantic-settings>=2.0",
    "PyYAML>=6.0",
]

setuptools.setup(
    name="acmesign",
    version=version["__version__"],
    description="ACME DNS-01 certificate issuance and renewal engine",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=setuptools.find_packages(include=["acmesign", "acmesign.*"]),
    install_requires=dependencies,
    extras_require={
        "test": [
            "pytest>=7.0",
            "pytest-asyncio>=0.23",
        ],
    },
    entry_points={
        "console_scripts": [
            "acmesign=acmesign.main:main",
        ],
    },
    classifiers=[
        "Programming Language :: Python :: 3",
        "Operating System :: OS Independent",
    ],
    python_requires=">=3.10",
)
