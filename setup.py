from setuptools import setup, find_packages  # ignore: type

setup(
    name="index_migrator",
    version="1.0.0",
    description="Zero-downtime mapping migrations for Elasticsearch and OpenSearch indices",
    packages=find_packages(exclude=("tests",)),
    install_requires=["requests", "boto3", "pyyaml", "Click", "cerberus", "pydantic", "rich>=14.0.0"],
    extras_require={
        "test": ["pytest", "pytest-mock", "requests-mock", "moto"],
    },
    entry_points={
        "console_scripts": [
            "index-migrator = index_migrator.cli:main",
        ],
    },
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "Topic :: Database",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.11",
        "License :: OSI Approved :: Apache Software License",
    ],
)
