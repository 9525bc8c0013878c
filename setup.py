from setuptools import setup, find_packages

setup(
    name='docsync',
    version='0.1.0',
    packages=find_packages(include=['docsync', 'docsync.*']),
    install_requires=[
        'python-dotenv',
        'pydantic>=2',
        'pyyaml',
        'aiohttp',
    ],
    extras_require={
        'test': [
            'pytest',
            'pytest-asyncio',
        ],
    },
    author='While True Industries',
    author_email='adam@whiletrue.industries',
    description='Documentation cache sync engine, metadata store and scheduler',
    python_requires='>=3.10',
)
