from setuptools import setup, find_packages

setup(
    name="agent-rewind",
    version="0.1.0",
    description="agent-rewind: context-window management and git shadow-repository checkpoints for coding agents",
    author="agent-rewind",
    author_email="no-reply@example.com",
    packages=find_packages(include=["agent_rewind", "agent_rewind.*"]),
    install_requires=[
        "pydantic>=2",  # Typed configuration
        "tiktoken",  # Token counting
        "watchdog",  # Ignore-file watching
    ],
    extras_require={
        "test": ["pytest"],
    },
    python_requires=">=3.9",
)
