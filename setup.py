from setuptools import setup, find_packages

setup(
    name="kg-analytics",
    version="1.0.0",
    packages=find_packages(include=["kg_analytics", "kg_analytics.*"]),
    install_requires=[
        "numpy",
        "scipy",
        "pandas",
        "matplotlib",
        "numba",
        "scikit-network",
        "click",
    ],
    extras_require={
        "test": ["pytest"],
    },
    entry_points={
        "console_scripts": [
            "kg-analytics=kg_analytics.cli:main",
        ],
    },
    description="Layout, community detection, path analysis and visual encoding for knowledge graphs",
    python_requires=">=3.8",
)
