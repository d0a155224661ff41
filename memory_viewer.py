#!/usr/bin/env python3
"""Web viewer for a project's memories - accessible in browser."""

from __future__ import annotations

import asyncio
import sys
from urllib.parse import urlencode

from flask import Flask, render_template_string, request

from config import Config
from errors import ConfigurationError, StorageError
from models import MemoryRecord
from store import VectorStore

ITEMS_PER_PAGE = 10


async def load_page(
    config: Config, project_id: str, category: str | None, page: int
) -> tuple[list[MemoryRecord], int, bool]:
    """Fetch one page of a project's memories (optionally one category), newest first.

    Returns (memories, total, table_exists). Never provisions the table.
    """
    store = VectorStore(config.connection_string, config.embedding_dim, config.table_name)
    try:
        await store.connect(create=False)
        if not await store.table_exists():
            return [], 0, False
        total = await store.count_by_project(project_id, category)
        memories = await store.list(
            project_id, category, limit=ITEMS_PER_PAGE, offset=(page - 1) * ITEMS_PER_PAGE
        )
    finally:
        store.close()
    return memories, total, True


def get_page_links(current: int, total: int) -> list:
    """Generate smart pagination links with ellipsis for gaps."""
    if total <= 7:
        return list(range(1, total + 1))

    links = []
    for p in range(1, total + 1):
        show_page = (
            p <= 3  # First 3 pages
            or p >= total - 2  # Last 3 pages
            or abs(p - current) <= 1  # Pages around current
        )
        if show_page:
            links.append(p)
        elif links[-1] != "...":
            links.append("...")
    return links


HTML = """
<!DOCTYPE html>
<html>
<head>
    <title>Memory Viewer</title>
    <style>
        body { font-family: system-ui; max-width: 900px; margin: 0 auto; padding: 20px; background: #1a1a2e; color: #eee; }
        h1 { color: #00d9ff; }
        .header { display: flex; justify-content: space-between; align-items: center; margin-bottom: 20px; flex-wrap: wrap; gap: 10px; }
        .pagination { display: flex; gap: 6px; align-items: center; flex-wrap: wrap; }
        .pagination a, .pagination span { padding: 6px 12px; background: #0f3460; color: #00d9ff; text-decoration: none; border-radius: 5px; display: inline-block; }
        .pagination a:hover { background: #16213e; }
        .pagination span.current { background: #00d9ff; color: #1a1a2e; font-weight: bold; }
        .pagination span.ellipsis { color: #888; background: transparent; }
        .pagination a.disabled { color: #666; pointer-events: none; }
        .memory { background: #16213e; padding: 15px; margin: 10px 0; border-radius: 8px; border-left: 4px solid #00d9ff; }
        .category { display: inline-block; padding: 2px 8px; border-radius: 4px; font-size: 12px; font-weight: bold; background: #4a90d9; }
        .meta { color: #888; font-size: 12px; margin-top: 8px; }
        .notice { color: #f39c12; }
        input { padding: 10px; width: 100%; border-radius: 5px; border: none; background: #0f3460; color: #fff; }
    </style>
</head>
<body>
    <div class="header">
        <h1>Memory Viewer</h1>
        {% if project %}
        <div class="pagination">
            {% if page > 1 %}
            <a href="/?{{ link_query }}&page={{ page-1 }}">← Prev</a>
            {% else %}
            <a class="disabled">← Prev</a>
            {% endif %}

            {% for p in page_links %}
            {% if p == "..." %}
            <span class="ellipsis">...</span>
            {% elif p == page %}
            <span class="current">{{ p }}</span>
            {% else %}
            <a href="/?{{ link_query }}&page={{ p }}">{{ p }}</a>
            {% endif %}
            {% endfor %}

            {% if page < total_pages %}
            <a href="/?{{ link_query }}&page={{ page+1 }}">Next →</a>
            {% else %}
            <a class="disabled">Next →</a>
            {% endif %}
        </div>
        {% endif %}
    </div>
    <form method="get" action="/">
        <input type="text" name="project" value="{{ project }}" placeholder="Project ID...">
        <input type="text" name="category" value="{{ category or '' }}" placeholder="Category (optional)...">
        <button type="submit" hidden></button>
    </form>
    {% if error %}
    <p class="notice">{{ error }}</p>
    {% elif project %}
    <p>{{ total_memories }} memories in {{ project }}{% if category %} ({{ category }}){% endif %}</p>
    {% endif %}
    <div id="memories">
        {% for m in memories %}
        <div class="memory">
            <span class="category">{{ m.category }}</span>
            <p>{{ m.content }}</p>
            <div class="meta">{{ m.id[:8] }} | {{ m.created_at[:19] }}{% if m.metadata %} | {{ m.metadata|tojson }}{% endif %}</div>
        </div>
        {% endfor %}
    </div>
</body>
</html>
"""


def create_app(config: Config) -> Flask:
    app = Flask(__name__)

    @app.route("/")
    def index():
        project = request.args.get("project", "").strip()
        category = request.args.get("category", "").strip() or None
        page = max(request.args.get("page", 1, type=int) or 1, 1)
        memories: list[MemoryRecord] = []
        total = 0
        error = None

        if project:
            try:
                memories, total, table_exists = asyncio.run(
                    load_page(config, project, category, page)
                )
            except StorageError as e:
                error = str(e)
            else:
                if not table_exists:
                    error = f"Table '{config.table_name}' has not been created yet."

        total_pages = max((total + ITEMS_PER_PAGE - 1) // ITEMS_PER_PAGE, 1)
        link_params = {"project": project}
        if category:
            link_params["category"] = category
        return render_template_string(
            HTML,
            project=project,
            category=category,
            link_query=urlencode(link_params),
            memories=memories,
            page=page,
            total_pages=total_pages,
            total_memories=total,
            page_links=get_page_links(page, total_pages),
            error=error,
        )

    return app


def main():
    try:
        config = Config.from_env()
    except ConfigurationError as e:
        print(f"{e}", file=sys.stderr)
        sys.exit(1)
    print("Open http://localhost:5000 in your browser")
    create_app(config).run(port=5000)


if __name__ == "__main__":
    main()
