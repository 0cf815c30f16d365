"""SCM abstraction layer."""

from jjdag.scm.jj import JJ, ListedWorkspace, ListingParseError, parse_workspace_list

__all__ = [
    "JJ",
    "ListedWorkspace",
    "ListingParseError",
    "parse_workspace_list",
]
