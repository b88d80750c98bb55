"""Setup script for SiteScribe package."""
from setuptools import setup, find_packages
from pathlib import Path

# Read README
readme_file = Path(__file__).parent / "README.md"
long_description = readme_file.read_text() if readme_file.exists() else ""

setup(
    name="sitescribe",
    version="0.1.0",
    author="SiteScribe Contributors",
    description="Semantic search indexing and ranking for web sites, with incremental re-embedding",
    long_description=long_description,
    long_description_content_type="text/markdown",
    url="https://github.com/sitescribe/sitescribe",
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.10",
    install_requires=[
        "flask>=3.0.0",
        "flask-cors>=4.0.0",
        "requests>=2.31.0",
        "python-dotenv>=1.0.0",
        "click>=8.1.0",
        "langchain-core>=0.2.0",
        "pydantic>=2.0.0",
        "beautifulsoup4>=4.12.0",
        "html2text>=2024.2.26",
        "tqdm>=4.66.0",
        "numpy>=1.24.0",
        "pyyaml>=6.0",
    ],
    extras_require={
        "local": ["sentence-transformers>=2.2.0"],
        "dev": ["pytest", "black", "flake8"],
    },
    entry_points={
        "console_scripts": [
            "sitescribe=sitescribe.cli:main",
        ],
    },
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "Topic :: Internet :: WWW/HTTP :: Indexing/Search",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
    keywords="search semantic-search embeddings rag static-site indexing",
)
