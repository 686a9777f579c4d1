"""Build PeerChat package."""
import setuptools

with open("README.md") as f:
    long_desc = f.read()

setuptools.setup(
    name="peerchat",
    version="0.1.0",
    description="Signed peer-to-peer chat over WebRTC data channels",
    long_description=long_desc,
    long_description_content_type="text/markdown",
    packages=setuptools.find_packages(include=["peerchat", "peerchat.*"]),
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
    ],
    python_requires=">=3.10",
    install_requires=[
        "aiortc>=1.9.0",
        "click",
        "cryptography>=42.0.0",
        "pydantic>=2",
        "tomli ; python_version<'3.11'",
        "tomli-w",
        "typing-extensions>=4.3.0 ; python_version<'3.11'",
        "websockets>=13.1",
    ],
    extras_require={
        "dev": [
            "pytest>=8",
            "pytest-asyncio>=0.23.1",
            "uvloop ; sys_platform!='win32'",
        ],
    },
    entry_points={
        "console_scripts": [
            "peerchat = peerchat.cli:cli",
            "peerchat-relay = peerchat.p2p.relay.run:cli",
        ],
    },
)
