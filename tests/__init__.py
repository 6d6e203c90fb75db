"""
lazycrud test suite.

This package contains:
- unit/: Matcher, ACL, errors, schema, stores and other building blocks
- integration/: Generated operations end to end, including the HTTP app
"""
