from typing import Optional

from textual import on, work
from textual.app import ComposeResult
from textual.containers import Horizontal, Vertical
from textual.screen import ModalScreen
from textual.widgets import Button, Input, Label, Select, TextArea

from db.errors import StickerDeskError
from db.models import Brand, Order, OrderStatus
from db.orders import compute_total
from utils.pure import format_currency, item_lines, parse_item_lines


class OrderFormModal(ModalScreen[Optional[Order]]):
    """
    Create an order (no order given) or edit an existing order's status and
    items. Dismisses with the saved order, or None when cancelled.
    """

    DEFAULT_CSS = """
    OrderFormModal {
        align: center middle;
    }
    #div-order-form {
        width: 80;
        height: auto;
        max-height: 90%;
        padding: 1 2;
        border: thick $primary 80%;
        background: $surface;
    }
    #textarea-items {
        height: 10;
    }
    #hort-form-btns {
        height: auto;
        align-horizontal: right;
    }
    """

    def __init__(self, order: Optional[Order] = None) -> None:
        super().__init__()
        self.order = order

    def compose(self) -> ComposeResult:
        editing = self.order is not None
        with Vertical(id="div-order-form"):
            yield Label(f"Edit order {self.order.id[:8]}" if editing else "New order")
            yield Label("Customer email")
            yield Input(
                self.order.customer_email if editing else "",
                id="input-customer",
                disabled=editing,
            )
            yield Label("Brand")
            yield Input(
                self.order.brand_name if editing else "", id="input-brand", disabled=editing
            )
            yield Label("Status")
            yield Select(
                [(s.value, s) for s in OrderStatus],
                value=self.order.status if editing else OrderStatus.PENDING,
                allow_blank=False,
                id="select-form-status",
                disabled=not editing,
            )
            yield Label("Items: name | qty | price | type (one per line)")
            yield TextArea(item_lines(list(self.order.items)) if editing else "", id="textarea-items")
            yield Label("Total: -", id="label-total")
            with Horizontal(id="hort-form-btns"):
                yield Button("Cancel", id="btn-cancel")
                yield Button("Save", id="btn-save", variant="success")

    def on_mount(self) -> None:
        self._refresh_total()

    @on(TextArea.Changed)
    def _refresh_total(self) -> None:
        label = self.query_one("#label-total", Label)
        try:
            items = parse_item_lines(self.query_one(TextArea).text)
        except StickerDeskError as exc:
            label.update(str(exc))
            return
        label.update(f"Total: {format_currency(compute_total(items))}")

    @on(Button.Pressed, "#btn-cancel")
    def handle_cancel(self) -> None:
        self.dismiss(None)

    @on(Button.Pressed, "#btn-save")
    @work(exclusive=True)
    async def handle_save(self) -> None:
        ledger = self.app.ledger
        actor = self.app.state.user
        try:
            items = parse_item_lines(self.query_one(TextArea).text)
            if self.order is None:
                brand_name = self.query_one("#input-brand", Input).value.strip()
                customer = await self.app.users.get_user(
                    self.query_one("#input-customer", Input).value.strip().lower()
                )
                if customer is None:
                    self.notify("No customer with that email.", severity="error")
                    return
                brand = next(
                    (b for b in customer.brands or () if b.name == brand_name),
                    Brand(id=brand_name.lower().replace(" ", "-"), name=brand_name),
                )
                saved = await ledger.create_order(
                    customer.email,
                    brand,
                    items,
                    customer_uid=customer.id,
                    account_manager_email=customer.account_manager_id or actor.email,
                    actor=actor,
                )
            else:
                status = self.query_one("#select-form-status", Select).value
                saved = await ledger.edit_order(self.order, status, items, actor)
        except StickerDeskError as exc:
            self.notify(str(exc), severity="error")
            return
        self.notify(f"Order {saved.id[:8]} saved.")
        self.dismiss(saved)
