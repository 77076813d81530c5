from setuptools import setup, find_packages

# The native side is FreeTDS db-lib (libsybdb), loaded at runtime through ctypes;
# install it with your system package manager (e.g. freetds-dev / freetds).

setup(
    name='tdsclient',
    version='0.1.0',
    description='An async Python client for Microsoft SQL Server over FreeTDS db-lib',
    long_description=open('README.md').read(),
    long_description_content_type='text/markdown',
    packages=find_packages(where='python'),
    package_dir={'': 'python'},
    install_requires=[
        'structlog>=23.1',
    ],
    extras_require={
        'dev': [
            'pytest>=7.0',
            'pytest-asyncio>=0.21',
            'black>=23.0',
            'ruff>=0.1',
        ]
    },
    classifiers=[
        'Development Status :: 4 - Beta',
        'Intended Audience :: Developers',
        'Programming Language :: Python :: 3',
        'Programming Language :: Python :: 3.8',
        'Programming Language :: Python :: 3.9',
        'Programming Language :: Python :: 3.10',
        'Programming Language :: Python :: 3.11',
        'Programming Language :: Python :: 3.12',
        'License :: OSI Approved :: MIT License',
        'Operating System :: OS Independent',
        'Topic :: Database',
        'Topic :: Software Development :: Libraries :: Python Modules',
    ],
    python_requires='>=3.8',
    zip_safe=False,
)
