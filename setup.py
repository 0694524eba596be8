import pathlib
from setuptools import setup

# The directory containing this file
HERE = pathlib.Path(__file__).parent

# The text of the README file
README = (HERE / "README.md").read_text()

# This call to setup() does all the work
setup(
    name="mc3tree",
    version="1.0.0",
    description="Bayesian phylogenetic tree sampling by Metropolis-coupled MCMC",
    long_description=README,
    long_description_content_type="text/markdown",
    license="GPLv3+",
    classifiers=[
        "License :: OSI Approved :: GNU General Public License v3 or later (GPLv3+)",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.8",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
    ],
    python_requires=">=3.8",
    py_modules=['mc3tree'],
    install_requires=["numpy", "scipy"],
    extras_require={"test": ["pytest"]},
    entry_points={"console_scripts": ["mc3tree = mc3tree:main"]},
)
