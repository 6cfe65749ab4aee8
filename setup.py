"""
Setup script for Courier - End-to-end encrypted two-party chat over a relay.

Created by orpheus497

This messenger provides:
- Ephemeral ECDH key agreement (X25519, P-256 or secp256k1)
- HKDF-SHA256 session keys bound to room and peer pair
- AES-256-GCM messages with an HMAC-SHA256 integrity layer
- Public key fingerprints for out-of-band verification
- A minimal WebSocket relay that routes envelopes it cannot read
"""

from setuptools import setup, find_packages
import os

this_directory = os.path.abspath(os.path.dirname(__file__))
with open(os.path.join(this_directory, 'README.md'), encoding='utf-8') as f:
    long_description = f.read()

setup(
    name='courier-chat',
    version='1.0.0',
    author='orpheus497',
    description='End-to-end encrypted two-party terminal chat over an untrusted WebSocket relay',
    long_description=long_description,
    long_description_content_type='text/markdown',
    url='https://github.com/orpheus497/courier',
    package_dir={'': 'src'},
    packages=find_packages(where='src'),
    classifiers=[
        'Development Status :: 4 - Beta',
        'Intended Audience :: End Users/Desktop',
        'Topic :: Communications :: Chat',
        'Topic :: Security :: Cryptography',
        'License :: OSI Approved :: MIT License',
        'Programming Language :: Python :: 3',
        'Programming Language :: Python :: 3.8',
        'Programming Language :: Python :: 3.9',
        'Programming Language :: Python :: 3.10',
        'Programming Language :: Python :: 3.11',
        'Programming Language :: Python :: 3.12',
        'Operating System :: OS Independent',
        'Environment :: Console',
    ],
    python_requires='>=3.8',
    install_requires=[
        'cryptography>=42.0.4',
        'rich>=13.7.0',
        'websockets>=12.0',
        'tomli>=2.0.1; python_version < "3.11"',
    ],
    extras_require={
        'test': [
            'pytest>=7.4.0',
            'pytest-asyncio>=0.23.0',
        ],
    },
    entry_points={
        'console_scripts': [
            'courier=courier.main:main',
            'courier-relay=courier.relay:main',
        ],
    },
)
