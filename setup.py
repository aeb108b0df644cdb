from setuptools import find_packages, setup

setup(
    name="overlayws",
    version="0.1.0",
    packages=find_packages(exclude=["tests*"]),
    entry_points={
        "console_scripts": [
            "overlayws=overlayws.cli:main",
        ],
    },
    python_requires=">=3.10",
    extras_require={
        "test": ["pytest"],
    },
    description="Throwaway git workspaces backed by a FUSE copy-on-write overlay",
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "Topic :: Software Development :: Version Control",
        "Operating System :: POSIX :: Linux",
        "Programming Language :: Python :: 3.12",
    ],
)
