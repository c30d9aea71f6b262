"""Setup script for universal-asar"""
from setuptools import setup
from pathlib import Path
readme_path = Path(__file__).parent / "README.md"
long_description = readme_path.read_text(encoding="utf-8") if readme_path.exists() else ""
setup(
    name="universal-asar",
    version="1.0.0",
    author="Universal ASAR Project",
    author_email="info@universal-asar.dev",
    description="Merge x64 and arm64 Electron asar archives into a universal archive",
    long_description=long_description,
    long_description_content_type="text/markdown",
    py_modules=["universal_asar"],
    python_requires=">=3.8",
    install_requires=[],
    extras_require={
        "progress": ["tqdm>=4.60.0", "rich>=12.0.0"],
        "dev": ["pytest>=6.0.0", "black>=22.0.0", "flake8>=4.0.0", "pytest-asyncio"],
        "full": ["tqdm>=4.60.0", "rich>=12.0.0"],
    },
    entry_points={
        "console_scripts": [
            "universal-asar=universal_asar:cli_main",
        ],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Operating System :: MacOS",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.8",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Topic :: Software Development :: Build Tools",
        "Topic :: System :: Archiving :: Packaging",
    ],
)
