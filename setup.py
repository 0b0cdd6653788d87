import os
import re

from setuptools import setup, find_packages

ROOT_DIR = os.path.dirname(__file__)

install_require_list = [
    "tqdm",
    "numpy>=1.20",
    "onnx>=1.13",
    "protobuf>=3.20",
]

dev_require_list = ["yapf==0.32.0", "pylint==2.14.0"]

test_require_list = ["pytest"]


def get_gradsplit_version():
    with open(os.path.join(ROOT_DIR, "gradsplit", "version.py")) as fp:
        version_match = re.search(r"^__version__ = ['\"]([^'\"]*)['\"]",
                                  fp.read(), re.M)
        if version_match:
            return version_match.group(1)
    raise RuntimeError("Unable to find version string.")


if __name__ == "__main__":
    with open(os.path.join(ROOT_DIR, "README.md"), encoding="utf-8") as f:
        long_description = f.read()

    setup(
        name="gradsplit",
        version=get_gradsplit_version(),
        author="gradsplit Developers",
        author_email="",
        description=
        "gradsplit builds the gradient graph of an ONNX model and splits it "
        "into a forward graph and a backward graph for staged training.",
        long_description=long_description,
        long_description_content_type="text/markdown",
        classifiers=[
            'Programming Language :: Python :: 3',
            'Topic :: Scientific/Engineering :: Artificial Intelligence'
        ],
        keywords=("gradient-graph onnx training recompute deep-learning "
                  "python"),
        packages=find_packages(exclude=["tests", "tests.*"]),
        python_requires='>=3.7',
        install_requires=install_require_list,
        extras_require={
            'dev': dev_require_list,
            'test': test_require_list,
        },
    )
