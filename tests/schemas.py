"""
Tables shared by the test suite.

- blog: owned, searchable on title, with single and multi file fields
- chat / message: owned parent with a child table
- wiki: org-scoped, searchable on content
- project / task: org-scoped, task edit rights come from its project
- movie: cache keyed by tmdb_id
"""

from lazycrud import (
    IndexDef,
    SchemaRegistry,
    cache_table,
    child_table,
    field,
    org_table,
    owned_table,
)

BLOG = owned_table(
    "blog",
    fields=(
        field("title", "str", required=True, max_length=200),
        field("content", "str"),
        field("category", "enum", enum_values=("tech", "life")),
        field("published", "bool"),
        field("views", "int"),
        field("cover_image", "file"),
        field("attachments", "files"),
    ),
    search="title",
)

CHAT = owned_table(
    "chat",
    fields=(
        field("title", "str", required=True),
        field("is_public", "bool"),
    ),
)

MESSAGE = child_table(
    "message",
    fields=(
        field("chat_id", "ref", required=True, ref_table="chat"),
        field("text", "str", required=True),
        field("image", "file"),
    ),
    parent="chat",
    foreign_key="chat_id",
)

WIKI = org_table(
    "wiki",
    fields=(
        field("title", "str", required=True),
        field("content", "str"),
        field("status", "enum", enum_values=("draft", "published")),
    ),
    search="content",
)

PROJECT = org_table(
    "project",
    fields=(field("name", "str", required=True),),
)

TASK = org_table(
    "task",
    fields=(
        field("title", "str", required=True),
        field("project_id", "ref", ref_table="project"),
        field("done", "bool"),
    ),
    indexes=(IndexDef("by_project", ("project_id",)),),
)

MOVIE = cache_table(
    "movie",
    fields=(
        field("tmdb_id", "int", required=True),
        field("title", "str", required=True),
        field("overview", "str"),
    ),
    key="tmdb_id",
)

ALL_TABLES = (BLOG, CHAT, MESSAGE, WIKI, PROJECT, TASK, MOVIE)


def make_registry() -> SchemaRegistry:
    registry = SchemaRegistry()
    for table in ALL_TABLES:
        registry.register(table)
    return registry
