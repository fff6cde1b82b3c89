from setuptools import setup, find_packages

setup(
    name             = 'voxtally',
    version          = '1.0.0',
    description      = 'voxtally: WhatsApp voice-message duration ledger',
    packages         = find_packages(exclude=['tests*']),
    install_requires = open('requirements.txt').read().splitlines(),
    extras_require   = {
        'test': ['pytest', 'httpx'],
    },
    entry_points     = {
        'console_scripts': [
            'voxtally = voxtally.cli:main',
        ],
    },
    python_requires  = '>=3.10',
    classifiers      = [
        'Programming Language :: Python :: 3',
        'License :: OSI Approved :: MIT License',
        'Operating System :: OS Independent',
    ],
)
