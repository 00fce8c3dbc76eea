from setuptools import setup, find_packages

setup(
    name="untis-mirror-core",
    version="0.1.0",
    description="WebUntis 鏡面顯示器的資料抓取與精簡化核心",
    author="Skywind5487",
    author_email="skywind5487@gmail.com",
    packages=find_packages(exclude=["tests.*", "tests"]),
    python_requires=">=3.8",
    install_requires=[
        "aiohttp>=3.8.0",
        "pydantic>=2.0.0",
        "tenacity>=8.0.0",
        "python-dotenv>=0.19.0",
    ],
    extras_require={
        "dev": [
            "pytest>=6.0.0",
            "pytest-asyncio>=0.14.0",
            "black>=22.0.0",
            "isort>=5.0.0",
            "mypy>=0.900",
        ],
    },
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Education",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.8",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
    keywords="webuntis, timetable, magicmirror, education",
)
