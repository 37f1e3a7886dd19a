from setuptools import setup, find_packages

setup(
    name="abuseshield",
    version="0.1.0",
    description="Request abuse-prevention pipeline: rate limiting, CSRF and injection defense",
    packages=find_packages(include=["shield", "shield.*"]),
    python_requires=">=3.11",
    install_requires=[
        "fastapi>=0.110",
        "starlette>=0.36",
        "pydantic>=2.6",
        "pydantic-settings>=2.7",
        "redis>=5.0",
        "cryptography>=42.0",
        "python-multipart>=0.0.9",
        "uvicorn[standard]>=0.27",
    ],
    extras_require={
        "test": [
            "pytest>=8.0",
            "pytest-asyncio>=0.23",
            "httpx>=0.27",
        ],
    },
)
