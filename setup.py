from setuptools import find_packages, setup

setup(
    name='shapeundercloth',
    version='0.1.0',
    author='István Sárándi',
    author_email='istvan.sarandi@uni-tuebingen.de',
    package_dir={'': 'src'},
    packages=find_packages('src'),
    scripts=[],
    description='Fits SMPL-family body model pose, shape and translation under clothing by '
    'minimizing signed distances to an observed target surface',
    python_requires='>=3.8',
    install_requires=[
        'numpy',
        'scipy',
        'trimesh',
    ],
    extras_require={
        'test': ['pytest'],
    },
)
