# setup.py

from setuptools import setup, find_packages

VERSION = "0.1.0"
DESCRIPTION = "scrnaseq_integrate: merge, quality-filter and anchor-integrate scRNA-seq batches."
# Attempt to read the long description from README.md
try:
    with open("README.md", "r", encoding="utf-8") as fh:
        LONG_DESCRIPTION = fh.read()
except FileNotFoundError:
    LONG_DESCRIPTION = DESCRIPTION

setup(
    name="scrnaseq_integrate",
    version=VERSION,
    author="MICHAEL IRUNGU",
    description=DESCRIPTION,
    long_description=LONG_DESCRIPTION,
    long_description_content_type="text/markdown",
    packages=find_packages(exclude=["tests*", "docs*", "examples*", "output_*", "pipeline_*"]),
    install_requires=[
        "scanpy>=1.9",
        "anndata>=0.10",
        "pandas>=1.5",
        "numpy>=1.21",
        "scipy>=1.8",
        "scikit-learn>=1.1",     # nearest neighbours, randomized SVD
        "joblib>=1.2",           # per-batch / per-pair worker pool
        "PyYAML>=6.0",
        "scikit-misc>=0.1.4",    # loess for the seurat_v3 HVG flavor
    ],
    extras_require={
        "test": ["pytest>=7.0"],
    },
    python_requires=">=3.10",
    classifiers=[
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Intended Audience :: Science/Research",
        "Topic :: Scientific/Engineering :: Bio-Informatics",
    ],
    entry_points={
        'console_scripts': [
            'scrnaseq-integrate=scrnaseq_integrate.cli:main',
        ],
    }
)
