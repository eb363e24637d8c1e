from setuptools import setup, find_packages


with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

setup(
    name="labsim",
    version="0.1.0",
    description="A discrete event simulator of a shared laboratory hematology analyzer.",
    long_description=long_description,
    long_description_content_type="text/markdown",
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
    ],
    packages=find_packages(exclude=("tests", "tests.*", "dev")),
    package_data={"labsim": ["default_config.yaml"]},
    python_requires=">=3.10",
    install_requires=[
        "numpy",
        "pandas",
        "pyyaml",
        "schema",
        "scipy",
    ],
    extras_require={"test": ["pytest", "pytest-mock"]},
    tests_require=["pytest", "pytest-mock"],
    entry_points={"console_scripts": ["labsim=labsim.cli:main"]},
)
