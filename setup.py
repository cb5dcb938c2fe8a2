# ╔══════════════════════════════════════════════════════════════════════╗
# ║  SDCore — Latent Diffusion Sampling Core                             ║
# ║  Copyright © 2026 Pictofeed, LLC. All rights reserved.               ║
# ╚══════════════════════════════════════════════════════════════════════╝
"""
SDCore build configuration.

The repository root is the ``sdcore`` package itself; ``package_dir`` maps
the package names onto the flat layout.

Build
-----
    pip install -e .                          # editable install
    pip install -e '.[dev]'                   # with test tooling
    python setup.py bdist_wheel               # wheel
"""
import os

from setuptools import setup

HERE = os.path.dirname(os.path.abspath(__file__))

# ── Package metadata ──
readme_path = os.path.join(HERE, 'README.md')
if os.path.isfile(readme_path):
    with open(readme_path, 'r', encoding='utf-8') as fh:
        long_description = fh.read()
else:
    long_description = ''

setup(
    name='sdcore',
    version='0.1.0',
    author='Pictofeed, LLC',
    author_email='engineering@pictofeed.io',
    description=(
        'Latent diffusion sampling core — PNDM and DPM-Solver++ schedulers, '
        'classifier-free guidance and the Stable Diffusion denoising loop'
    ),
    long_description=long_description,
    long_description_content_type='text/markdown',
    url='https://github.com/pictofeed/sdcore',
    license='Proprietary',

    package_dir={
        'sdcore': '.',
        'sdcore.diffusion': 'diffusion',
    },
    packages=[
        'sdcore',
        'sdcore.diffusion',
    ],

    python_requires='>=3.11',
    install_requires=[
        'numpy>=1.24',
        'tqdm>=4.64',
    ],
    extras_require={
        'dev': [
            'pytest>=7.0',
            'pytest-benchmark',
        ],
    },

    classifiers=[
        'Development Status :: 3 - Alpha',
        'Intended Audience :: Developers',
        'Intended Audience :: Science/Research',
        'License :: Other/Proprietary License',
        'Operating System :: MacOS :: MacOS X',
        'Operating System :: POSIX :: Linux',
        'Operating System :: Microsoft :: Windows',
        'Programming Language :: Python :: 3',
        'Programming Language :: Python :: 3.11',
        'Programming Language :: Python :: 3.12',
        'Topic :: Scientific/Engineering :: Artificial Intelligence',
    ],
    zip_safe=False,
)
