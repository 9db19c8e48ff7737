import os
from setuptools import setup


base_dir = os.path.dirname(__file__)
about = {}
with open(os.path.join(base_dir, "tlscredentials", "__init__.py")) as f:
    exec(f.read(), about)

try:
    long_description = open("README.rst", "r").read()
except Exception:
    long_description = None


setup(
    name="tlscredentials",
    version=about["__version__"],
    packages=[
        "tlscredentials",
        "tlscredentials.pkcs12",
        "tlscredentials.x509",
    ],
    package_data={"tlscredentials": ["py.typed"]},
    include_package_data=True,
    license="MIT",
    description="Alias-aware provisioning of TLS client credentials from key stores",
    long_description=long_description,
    install_requires=[
        "certvalidator>=0.11",
        "asn1crypto>=1.3,<2",
        "cryptography>=43",
        "typing_extensions>=4.6.0",
        "pyjks>=20",
    ],
    extras_require={
        "test": ["pytest"],
    },
    keywords=["tls", "pkcs12", "keystore", "truststore", "mtls"],
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "Intended Audience :: System Administrators",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: Security :: Cryptography",
        "Topic :: Utilities",
    ],
)
