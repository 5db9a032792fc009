"""Setup script for mini-search package."""
from setuptools import setup, find_packages
from pathlib import Path

# Read README
readme_file = Path(__file__).parent / "README.md"
long_description = readme_file.read_text() if readme_file.exists() else ""

setup(
    name="mini-search",
    version="0.1.0",
    author="mini-search Contributors",
    description="Self-hosted search engine: bounded web crawling with hybrid BM25 + sentence-embedding ranking",
    long_description=long_description,
    long_description_content_type="text/markdown",
    url="https://github.com/yourusername/mini-search",
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.10",
    install_requires=[
        "flask>=3.0.0",
        "flask-cors>=4.0.0",
        "requests>=2.31.0",
        "python-dotenv>=1.0.0",
        "click>=8.1.0",
        "langchain-core>=0.1.0",
        "pydantic>=2.0.0",
        "beautifulsoup4>=4.12.0",
        "lxml>=5.0.0",
        "tqdm>=4.66.0",
        "numpy>=1.24.0",
        "torch>=2.1.0",
        "sentence-transformers>=2.6.0",
        "faiss-cpu>=1.7.4",
        "rank-bm25>=0.2.2",
    ],
    extras_require={
        "test": ["pytest>=7.0.0"],
        "dev": ["pytest>=7.0.0", "black", "flake8"],
    },
    entry_points={
        "console_scripts": [
            "mini-search=mini_search.cli:main",
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
    keywords="search engine crawler bm25 embeddings faiss flask",
)
