from setuptools import setup
import io
import os.path


here = os.path.abspath(os.path.dirname(__file__))

with io.open(os.path.join(here, 'README.md'), encoding='utf-8') as f:
    long_description = f.read()

with io.open(os.path.join(here, 'requirements.txt'), encoding='utf-8') as f:
    requirements = [r for r in f.read().split('\n') if len(r)]


setup(name='pyln-wtclient',
      version='0.1.0',
      description='Watchtower client plugin for Core Lightning',
      long_description=long_description,
      long_description_content_type='text/markdown',
      license='MIT',
      packages=['pyln.wtclient'],
      scripts=['watchtower-client.py'],
      python_requires='>=3.10',
      zip_safe=True,
      install_requires=requirements,
      extras_require={
          'test': ['pytest'],
      })
