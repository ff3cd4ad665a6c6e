"""leetcli_py - terminal client for LeetCode with an offline-first cache."""

__version__ = "1.0.0"
