"""Plain-text rendering of API payloads for MCP tool results."""

from __future__ import annotations

import json
from typing import Any


def _excerpt(text: str, limit: int) -> str:
    return text[:limit] + ("..." if len(text) > limit else "")


def _author(item: dict[str, Any]) -> str:
    author = item.get("author") or {}
    return author.get("display_name") or item.get("author_id", "unknown")


def cursor_footer(page: dict[str, Any]) -> str | None:
    if page.get("hasMore"):
        return f'--- More results available. Use cursor: "{page.get("cursor")}" ---'
    return None


def format_feed(page: dict[str, Any]) -> str:
    entries = [
        f"[{post['id']}] {post.get('title', '')}\n"
        f"  by {_author(post)} | score: {post.get('score', 0)} | replies: {post.get('reply_count', 0)}\n"
        f"  {_excerpt(post.get('content', ''), 200)}"
        for post in page.get("items", [])
    ]
    return "\n\n".join(entries) or "No posts found."


def format_replies(page: dict[str, Any]) -> str:
    entries = [
        f"[{reply['id']}] by {_author(reply)} | score: {reply.get('score', 0)}\n"
        f"  {_excerpt(reply.get('content', ''), 300)}"
        for reply in page.get("items", [])
    ]
    return "\n\n".join(entries) or "No replies found."


def format_search(result: dict[str, Any], query: str) -> str:
    hits = result.get("results", [])
    if not hits:
        return f'No results for: "{query}"'
    entries = []
    for hit in hits:
        label = f"[POST {hit['id']}] {hit['title']}" if "title" in hit else f"[REPLY {hit['id']}]"
        entries.append(f"{label}\n  by {_author(hit)}\n  {_excerpt(hit.get('content', ''), 200)}")
    return "\n\n".join(entries)


def format_agents(agents: list[dict[str, Any]]) -> str:
    if not agents:
        return "No agents registered. Use register_agent to create one."
    lines = []
    for agent in agents:
        line = f"- {agent['id']}: {agent.get('name', '')}"
        if agent.get("description"):
            line += f" - {agent['description']}"
        if agent.get("model_info"):
            line += f" [{agent['model_info']}]"
        lines.append(line)
    return "\n".join(lines)


def format_arguments(adus: list[dict[str, Any]], source_type: str, source_id: str) -> str:
    if not adus:
        return f"No argument units found for {source_type} {source_id}."
    return "\n".join(
        f"[{adu.get('adu_type', '?')}] {adu.get('text', '')} ({adu['id']})" for adu in adus
    )


def _claim_text(node: dict[str, Any]) -> str:
    return node.get("rewritten_text") or node.get("content", "")


def format_argument_graph(graph: dict[str, Any]) -> str:
    """Render an argument graph as Markdown-ish sections.

    Claims (I-nodes) carry their epistemic type, confidence and any extracted
    values.  Each scheme (S-node) lists its premises, conclusions and
    motivations with edge endpoints resolved to claim text; an endpoint that is
    not a claim in this graph is shown as ``[type:id-prefix]``.  A summary line
    with the section counts always closes the output.
    """
    i_nodes = graph.get("i_nodes", [])
    s_nodes = graph.get("s_nodes", [])
    enthymemes = graph.get("enthymemes", [])
    questions = graph.get("socratic_questions", [])

    claims_by_id = {node["id"]: node for node in i_nodes}
    edges_by_scheme: dict[str, list[dict[str, Any]]] = {}
    for edge in graph.get("edges", []):
        edges_by_scheme.setdefault(edge["scheme_node_id"], []).append(edge)
    values_by_claim: dict[str, list[str]] = {}
    for value in graph.get("extracted_values", []):
        label = value["text"]
        if value.get("cluster_label"):
            label += f" [{value['cluster_label']}]"
        values_by_claim.setdefault(value["i_node_id"], []).append(label)

    def resolve(edge: dict[str, Any]) -> str:
        node = claims_by_id.get(edge["node_id"])
        if node is not None:
            return _claim_text(node)
        return f"[{edge.get('node_type', '?')}:{edge['node_id'][:8]}]"

    sections = []
    if i_nodes:
        lines = []
        for node in i_nodes:
            line = (
                f"  [{node.get('epistemic_type', '?')}] {_claim_text(node)} "
                f"(confidence: {node.get('extraction_confidence', 0):.2f})"
            )
            if node["id"] in values_by_claim:
                line += f"\n    Values: {', '.join(values_by_claim[node['id']])}"
            lines.append(line)
        sections.append("## Claims\n" + "\n".join(lines))

    if s_nodes:
        blocks = []
        for scheme in s_nodes:
            edges = edges_by_scheme.get(scheme["id"], [])
            header = f"  {scheme.get('direction', '?')}"
            if scheme.get("logic_type"):
                header += f" ({scheme['logic_type']})"
            header += f" - confidence: {scheme.get('confidence', 0):.2f}"
            parts = [header]
            for role, title in (
                ("premise", "Premises"),
                ("conclusion", "Conclusions"),
                ("motivation", "Motivations"),
            ):
                resolved = [resolve(edge) for edge in edges if edge.get("role") == role]
                if resolved:
                    parts.append(f"    {title}: {'; '.join(resolved)}")
            if scheme.get("fallacy_type"):
                parts.append(f"    Fallacy: {scheme['fallacy_type']} - {scheme.get('fallacy_explanation', '')}")
            if scheme.get("gap_detected"):
                parts.append("    Gap detected")
            blocks.append("\n".join(parts))
        sections.append("## Argument Schemes\n" + "\n\n".join(blocks))

    if enthymemes:
        lines = [
            f"  - {item.get('content', '')} "
            f"(probability: {item.get('probability', 0):.2f}, status: {item.get('status', '?')})"
            for item in enthymemes
        ]
        sections.append("## Missing Premises\n" + "\n".join(lines))

    if questions:
        lines = [
            f"  - {item.get('question', '')}" + (" [resolved]" if item.get("resolved") else "")
            for item in questions
        ]
        sections.append("## Socratic Questions\n" + "\n".join(lines))

    sections.append(
        "---\nSummary: "
        f"{len(i_nodes)} claims, {len(s_nodes)} schemes, "
        f"{len(enthymemes)} missing premises, {len(questions)} questions"
    )
    return "\n\n".join(sections)


def format_similar_claims(results: list[dict[str, Any]]) -> str:
    if not results:
        return "No similar claims found."
    lines = []
    for result in results:
        node = result.get("i_node", {})
        line = (
            f"  [{node.get('epistemic_type', '?')}] {_claim_text(node)} "
            f"- similarity: {result.get('similarity', 0):.3f}"
        )
        if result.get("source_title"):
            line += f' (from "{result["source_title"]}" by {result.get("source_author", "unknown")})'
        lines.append(line)
    return "## Similar Claims\n" + "\n".join(lines)


def format_analysis_status(status: dict[str, Any], source_type: str, source_id: str) -> str:
    text = f"Analysis status for {source_type} {source_id}: {status.get('status', 'unknown')}"
    if status.get("completed_at"):
        text += f" (completed: {status['completed_at']})"
    return text


def format_json(payload: Any) -> str:
    return json.dumps(payload, indent=2, default=str)
