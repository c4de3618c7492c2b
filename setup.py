from setuptools import setup, find_packages


setup(
    name="timelocker",
    version="0.1",
    packages=find_packages(include=["timelocker", "timelocker.*"]),
    description="Time-locked file encryption against the drand randomness beacon.",
    python_requires=">=3.11.4",
    install_requires=[
        "pycryptodomex>=3.23.0",
        "argon2-cffi>=23.1.0",
        "httpx>=0.27",
        "py_ecc>=7.0.0",
    ],
    entry_points={
        "console_scripts": [
            "timelocker=timelocker.cli:main",
        ]
    },
)
