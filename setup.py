from setuptools import find_packages, setup


setup(
    name='splat-binning',
    version='0.1',
    packages=find_packages(include=['splat_binning', 'splat_binning.*']),
    install_requires = [
        'taichi',
        'torch',
        'tqdm',
        'tensordict',
        'beartype',
        'roma'
    ],
    extras_require = {
        'test': ['pytest']
    },
)
