from setuptools import find_packages, setup

setup(
    name="re_metaai",
    version="1.0.0",
    description="Unofficial reverse-engineered Meta AI client in Python.",
    long_description=open("README.md").read(),
    long_description_content_type="text/markdown",
    packages=find_packages(exclude=("tests", "tests.*")),
    python_requires=">=3.9",
    install_requires=["curl_cffi>=0.7", "websockets>=13.0"],
    extras_require={
        "test": ["pytest>=7"],
    },
    entry_points={
        "console_scripts": [
            "re-metaai = re_metaai.cli:main",
        ],
    },
)
