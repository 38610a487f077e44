from decimal import Decimal, InvalidOperation
from typing import List, Literal, Optional

from db.errors import ValidationError
from db.models import Order, OrderItem, ProductType
from db.orders import OrderSummary, new_item


def generate_markdown_table(
    headers: Optional[List[str]],
    rows: List[List[str]],
    aligns: Optional[List[Literal["l", "c", "r"]]] = None,
) -> str:
    """
    Generate a Markdown table.

    Args:
        headers: List of column headers, or None to use first row as headers.
        rows: List of rows, each a list of strings.
        aligns: List of alignments ('l', 'c', 'r') for each column.
                Defaults to all center ('c').

    Returns:
        str: Markdown formatted table.
    """
    if not rows:
        return ""

    if not headers:
        headers, rows = rows[0], rows[1:]

    headers = list(map(str, headers))
    rows = [list(map(str, row)) for row in rows]

    num_cols = len(headers)
    if aligns is None:
        aligns = ["c"] * num_cols
    elif len(aligns) != num_cols:
        raise ValueError("Length of aligns must match number of headers.")

    align_map = {
        "l": ":---",
        "c": ":---:",
        "r": "---:",
    }

    header_line = "| " + " | ".join(headers) + " |"
    align_line = "| " + " | ".join(align_map[a] for a in aligns) + " |"
    row_lines = ["| " + " | ".join(row) + " |" for row in rows]

    return "\n".join([header_line, align_line, *row_lines])


def format_currency(amount: Decimal) -> str:
    sign = "-" if amount < 0 else ""
    return f"{sign}${abs(amount):,.2f}"


def order_markdown(order: Order) -> str:
    """Markdown detail page for an order: header facts, items, attachments."""
    lines = [
        f"# Order `{order.id[:8]}`",
        "",
        f"- **Customer:** {order.customer_email or order.customer_uid or '-'}",
        f"- **Brand:** {order.brand_name or '-'}",
        f"- **Status:** {order.status.value}",
        f"- **Created:** {order.created_at:%Y-%m-%d %H:%M}",
        f"- **Total:** {format_currency(order.total_amount)}",
        "",
        "## Items",
        "",
    ]
    rows = [
        [
            item.name,
            item.product_type.value,
            str(item.quantity),
            format_currency(item.price),
            format_currency(item.line_total),
        ]
        for item in order.items
    ]
    lines.append(
        generate_markdown_table(
            ["Item", "Type", "Qty", "Price", "Line total"],
            rows,
            ["l", "c", "r", "r", "r"],
        )
        or "_No items._"
    )
    if order.attachments:
        lines += ["", "## Attachments", ""]
        lines += [f"- [{a.name}]({a.url}) ({a.type.value})" for a in order.attachments]
    return "\n".join(lines)


def summary_markdown(summary: OrderSummary) -> str:
    rows = [[name, str(count)] for name, count in summary.top_items]
    parts = [
        f"**Total spent:** {format_currency(summary.total_spent)}  ",
        f"**Completed:** {summary.completed_count}  ",
        f"**In progress:** {summary.in_progress_count}",
    ]
    if rows:
        parts += ["", generate_markdown_table(["Top items", "Orders"], rows, ["l", "r"])]
    return "\n".join(parts)


def parse_item_lines(text: str) -> List[OrderItem]:
    """
    Parse order items typed one per line as ``name | qty | price [| type]``.
    Blank lines are skipped; the type defaults to sticker.
    """
    items = []
    for lineno, raw in enumerate(text.splitlines(), start=1):
        if not raw.strip():
            continue
        parts = [p.strip() for p in raw.split("|")]
        if len(parts) not in (3, 4):
            raise ValidationError(f"Line {lineno}: expected 'name | qty | price [| type]'.")
        name, qty, price = parts[:3]
        try:
            quantity = int(qty)
            amount = Decimal(price)
        except (ValueError, InvalidOperation):
            raise ValidationError(f"Line {lineno}: quantity or price is not a number.")
        if not amount.is_finite():
            raise ValidationError(f"Line {lineno}: price must be a finite amount.")
        try:
            product_type = ProductType(parts[3].lower()) if len(parts) == 4 else ProductType.STICKER
        except ValueError:
            raise ValidationError(f"Line {lineno}: unknown item type {parts[3]!r}.")
        items.append(new_item(name, quantity, amount, product_type))
    return items


def item_lines(items: List[OrderItem]) -> str:
    return "\n".join(
        f"{i.name} | {i.quantity} | {i.price} | {i.product_type.value}" for i in items
    )
