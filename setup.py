from setuptools import setup, find_packages

runtime_deps = [
    "numpy",
    "scipy",
    "pandas",
    "scikit-learn",
    "numba",
    "arviz<1.0",
    "tqdm",
]

test_extras = [
    "pytest",
]

setup(
    name="soft_bart",
    version="0.1.0",
    packages=find_packages(include=["soft_bart", "soft_bart.*"]),
    install_requires=runtime_deps,
    extras_require={
        "test": test_extras,
    },
    python_requires=">=3.9",
    description="MCMC sampler for soft Bayesian additive regression trees",
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
    ],
)
