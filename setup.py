import codecs
import os
import re
import setuptools


here = os.path.abspath(os.path.dirname(__file__))
readme = codecs.open(os.path.join(here, 'README.rst'), encoding='utf-8').read()
version = re.search(
    r"^VERSION = '([^']+)'$",
    codecs.open(os.path.join(here, 'certfetcher.py'), encoding='utf-8').read(),
    re.MULTILINE).group(1)

install_requires = [
    # onlyReturnExisting account lookup; tls-alpn-01 is gone in 5.x
    'acme>=1.32.0,<5',
    'cryptography',
    'dnspython>=2.0.0',
    # formerly known as acme.jose:
    'josepy',
    'mock',
    'pyOpenSSL',
    'requests',
]

tests_require = [
    'pycodestyle',
    'pylint',
    'pytest',
]

setuptools.setup(
    name='certfetcher',
    version=version,
    author='certfetcher contributors',
    description='ACME certificate fetcher library',
    long_description=readme,
    license='GPLv3',
    url='https://github.com/certfetcher/certfetcher',
    py_modules=['certfetcher'],
    python_requires='>=3.7',
    install_requires=install_requires,
    extras_require={
        'tests': tests_require,
    },
    classifiers=[
        'Development Status :: 3 - Alpha',
        'Intended Audience :: Developers',
        'Intended Audience :: System Administrators',
        'License :: OSI Approved :: GNU General Public License v3 (GPLv3)',
        'Operating System :: POSIX :: Linux',
        'Programming Language :: Python',
        'Programming Language :: Python :: 3',
        'Topic :: Internet :: WWW/HTTP',
        'Topic :: Security',
        'Topic :: Software Development :: Libraries',
        'Topic :: System :: Networking',
    ],
)
