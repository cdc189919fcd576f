from setuptools import setup, find_packages

setup(
    name="inbox-automation",
    version="0.1.0",
    description="AI rule automation for Gmail and Outlook mailboxes, driven by provider webhooks",
    packages=find_packages(where="src"),
    package_dir={"": "src"},
    python_requires=">=3.9",
    install_requires=[
        "google-generativeai>=0.7.0",
        "google-api-core>=2.19.0",
        "google-api-python-client>=2.134.0",
        "google-auth>=2.35.0",
        "google-auth-httplib2>=0.2.0",
        "httplib2>=0.22.0",
        "python-dotenv>=1.0.1",
        "tenacity>=9.0.0",
        "typer>=0.12.3",
        "rich>=13.7.1",
        "dataclasses-json>=0.6.7",
        "fastapi>=0.110.0",
        "uvicorn>=0.29.0",
        "redis>=5.0.0",
        "requests>=2.31.0",
        "msal>=1.28.0",
        "beautifulsoup4>=4.12.0",
    ],
    extras_require={
        "test": [
            "pytest>=8.0.0",
            "httpx>=0.27.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "inbox-automation=inbox_automation.main:app",
        ]
    },
)
