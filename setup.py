# crossify/setup.py
from setuptools import setup, find_packages

setup(
    name="crossify",
    version="0.1.0",
    packages=find_packages(),
    python_requires=">=3.9",
    install_requires=[
        "msgpack",            # state encoding
        "plyvel",             # LevelDB storage
        "cryptography",       # authority keys
        "pycryptodome",       # keccak
        "prometheus_client",  # metrics
        "psutil",             # monitoring
        "requests",           # reference-price oracle
    ],
    extras_require={
        "test": [
            "pytest",
            "pytest-asyncio",
        ],
    },
    entry_points={
        "console_scripts": [
            "crossify=crossify.cli:main",
        ],
    },
)
