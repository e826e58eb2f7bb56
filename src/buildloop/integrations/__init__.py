from buildloop.integrations.github import GitHubOrigin
from buildloop.integrations.linear import LinearOrigin

__all__ = ["GitHubOrigin", "LinearOrigin"]
