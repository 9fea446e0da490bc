from setuptools import setup, find_packages

with open("README.md", "r") as fh:
    long_description = fh.read()

setup(
    name="amlsdimage",
    version="0.1",
    author="Jonas Eriksson",
    author_email="jonas@upto.se",
    description="Assemble bootable SD card images for Amlogic (Khadas VIM3L) "
                "boards from a rootfs tarball and a custom U-Boot",
    long_description=long_description,
    long_description_content_type="text/markdown",
    license='Apache-2.0',
    packages=find_packages(exclude=['test']),
    extras_require={
        'parted': ['pyparted'],
        'test': ['pytest'],
    },
    python_requires='>=3.8',
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: Apache Software License",
        "Operating System :: POSIX :: Linux",
    ],
)
