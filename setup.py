from setuptools import setup, find_packages

setup(
    name="SimPower",
    version="0.1.0",
    packages=find_packages(include=["simpower", "simpower.*"]),
    python_requires=">=3.9",
    install_requires=[
        "numpy",
        "pandas",
        "matplotlib",
        "scipy",
        "statsmodels",
        "patsy",
        "joblib",
    ],
    extras_require={
        "progress": ["tqdm"],
        "test": ["pytest", "tqdm"],
    },
    author="Paweł Lenartowicz",
    description="Monte Carlo Power Simulation for Factorial Designs and Mixed Models",
)
