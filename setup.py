#!/usr/bin/env python3

from setuptools import setup

from iotubes import __version__

setup(
    name='iotubes',
    version=__version__,

    author='Wenlei Zhu',
    author_email='i@ztrix.me',
    url='https://github.com/zTrix/zio',

    license='LICENSE.txt',
    keywords="iotubes pwning io expect-like asyncio tubes",
    description='Composable asyncio duplex byte tubes for interactive protocol scripting.',
    long_description=open('README.txt').read(),

    py_modules = ['iotubes'],
    python_requires='>=3.8',

    # Refers to test/ directory
    test_suite='test',

    classifiers = [
        'Development Status :: 3 - Alpha',
        'Environment :: Console',
        'Framework :: AsyncIO',
        'Intended Audience :: Developers',
        'Operating System :: POSIX',
        'Operating System :: MacOS :: MacOS X',
        'Programming Language :: Python',
        'Programming Language :: Python :: 3',
        'Programming Language :: Python :: 3 :: Only',
        'Topic :: Software Development',
        'Topic :: System',
        'Topic :: Terminals',
        'Topic :: Utilities',
    ],
)
