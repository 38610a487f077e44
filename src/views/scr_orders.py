from typing import List, Optional

from textual import on, work
from textual.app import ComposeResult
from textual.binding import Binding
from textual.containers import Horizontal, Vertical
from textual.events import ScreenResume, ScreenSuspend
from textual.reactive import reactive
from textual.widgets import Button, DataTable, Input, Markdown, MarkdownViewer, Select

from db.errors import StickerDeskError
from db.models import ByUid, Order, OrderStatus
from db.orders import search_orders, summarize_orders
from db.sync import WATCH_CUSTOMER_ORDERS, WATCH_ORDERS
from utils.debounce import Debouncer
from utils.messages import OrdersChangedMessage
from utils.permissions import can_edit_orders, can_manage_orders
from utils.pure import format_currency, order_markdown, summary_markdown
from views.base_screen import BaseScreen
from views.modal_dialog import ConfirmDeleteModal
from views.modal_order_form import OrderFormModal


class OrdersScreen(BaseScreen):
    """
    Live order list. Staff see every order and can change status, edit or
    delete; customers see their own orders with a spending summary.

    Layout:
    - search box on top (debounced)
    - orders table, newest first
    - markdown detail of the highlighted order plus staff controls
    """

    DEFAULT_CSS = """
    #md-summary {
        height: auto;
        max-height: 8;
    }
    #table-orders {
        height: 1fr;
    }
    #md-order-detail {
        height: 1fr;
    }
    #hort-order-controls {
        height: auto;
    }
    #select-status {
        width: 24;
    }
    """

    BINDINGS = [
        Binding("ctrl+n", "new_order", "New Order", show=True),
    ]

    selected_id = reactive[Optional[str]](None)

    def __init__(self) -> None:
        super().__init__()
        self._orders: List[Order] = []
        self._visible: List[Order] = []
        self._query = ""
        self._debouncer: Debouncer[List[Order]] = Debouncer(self.app.settings.search_debounce)

    def compose(self) -> ComposeResult:
        yield from super().compose()
        with Vertical():
            yield Input(id="input-search", placeholder="Search id, brand, customer or item...")
            yield Markdown("", id="md-summary")
            yield DataTable(id="table-orders")
            yield MarkdownViewer(id="md-order-detail", show_table_of_contents=False)
            with Horizontal(id="hort-order-controls"):
                yield Select(
                    [(s.value, s) for s in OrderStatus],
                    id="select-status",
                    prompt="Status",
                )
                yield Button("Set status", id="btn-status", variant="primary")
                yield Button("Edit items", id="btn-edit")
                yield Button("Delete", id="btn-delete", variant="error")

    def on_mount(self) -> None:
        table = self.query_one(DataTable)
        table.cursor_type = "row"
        table.zebra_stripes = True
        table.add_columns("Order", "Created", "Customer", "Brand", "Status", "Total")

        user = self.app.state.user
        staff = user is not None and can_edit_orders(user)
        self.query_one("#hort-order-controls").display = staff
        self.query_one("#md-summary").display = not staff
        self.query_one("#btn-delete").display = user is not None and can_manage_orders(user)

    # ---------------------------
    # Watch lifecycle
    # ---------------------------

    @on(ScreenResume)
    @work(exclusive=True, group="watch")
    async def start_watch(self) -> None:
        if self.app.sync is None:
            return
        state = self.app.state
        on_change = lambda orders: self.post_message(OrdersChangedMessage(orders))
        try:
            if state.is_staff:
                await self.app.sync.watch_orders(on_change)
            else:
                await self.app.sync.watch_customer_orders(
                    self.app.ledger, ByUid(state.identity.uid), on_change
                )
        except StickerDeskError as exc:
            self.notify(f"Could not load orders: {exc}", severity="error")

    @on(ScreenSuspend)
    async def stop_watch(self) -> None:
        if self.app.sync is None:
            return
        self._debouncer.cancel()
        await self.app.sync.release(WATCH_ORDERS)
        await self.app.sync.release(WATCH_CUSTOMER_ORDERS)

    @on(OrdersChangedMessage)
    def handle_orders_changed(self, message: OrdersChangedMessage) -> None:
        self._orders = message.orders
        self._show(search_orders(self._orders, self._query))
        if not self.app.state.is_staff:
            self.query_one("#md-summary", Markdown).update(
                summary_markdown(summarize_orders(self._orders))
            )

    # ---------------------------
    # Search
    # ---------------------------

    @on(Input.Changed, "#input-search")
    def handle_search(self, message: Input.Changed) -> None:
        self._query = message.value
        self._debouncer.submit(message.value, self._search, self._show)

    async def _search(self, query: str) -> List[Order]:
        return search_orders(self._orders, query)

    def _show(self, orders: List[Order]) -> None:
        self._visible = orders
        table = self.query_one(DataTable)
        table.clear()
        for o in orders:
            table.add_row(
                o.id[:8],
                f"{o.created_at:%Y-%m-%d}",
                o.customer_email or o.customer_uid or "-",
                o.brand_name,
                o.status.value,
                format_currency(o.total_amount),
                key=o.id,
            )
        ids = [o.id for o in orders]
        if self.selected_id in ids:
            table.move_cursor(row=ids.index(self.selected_id))
        self._render_detail()

    # ---------------------------
    # Detail & actions
    # ---------------------------

    @on(DataTable.RowHighlighted)
    def handle_row_highlight(self, event: DataTable.RowHighlighted) -> None:
        self.selected_id = event.row_key.value if event.row_key else None

    def watch_selected_id(self) -> None:
        self._render_detail()

    def _selected(self) -> Optional[Order]:
        return next((o for o in self._visible if o.id == self.selected_id), None)

    def _render_detail(self) -> None:
        order = self._selected()
        md = order_markdown(order) if order else "### Select an order to view its details."
        self.query_one("#md-order-detail", MarkdownViewer).document.update(md)

    @on(Button.Pressed, "#btn-status")
    @work(exclusive=True)
    async def handle_status(self) -> None:
        order = self._selected()
        status = self.query_one("#select-status", Select).value
        if order is None or status == Select.BLANK:
            self.notify("Pick an order and a status first.", severity="warning")
            return
        if status == order.status:
            self.notify("Nothing to update.", severity="warning")
            return
        try:
            await self.app.ledger.update_status(order, status, self.app.state.user)
        except StickerDeskError as exc:
            self.notify(str(exc), severity="error")
            return
        self.notify(f"Order {order.id[:8]} is now {status.value}.")

    @on(Button.Pressed, "#btn-edit")
    @work(exclusive=True)
    async def handle_edit(self) -> None:
        order = self._selected()
        if order is None:
            return
        await self.app.push_screen_wait(OrderFormModal(order))

    @on(Button.Pressed, "#btn-delete")
    @work(exclusive=True)
    async def handle_delete(self) -> None:
        order = self._selected()
        if order is None:
            return
        if not await self.app.push_screen_wait(
            ConfirmDeleteModal(
                f"order {order.id[:8]}", f"{len(order.items)} item(s) for {order.customer_email}."
            )
        ):
            return
        try:
            await self.app.ledger.delete_order(order, self.app.state.user)
        except StickerDeskError as exc:
            self.notify(str(exc), severity="error")
            return
        projection = self.app.sync.projection(WATCH_ORDERS)
        if projection is not None and projection.remove_local(order.id):
            self._orders = projection.items
            self._show(search_orders(self._orders, self._query))
        self.notify(f"Order {order.id[:8]} deleted.")

    @work(exclusive=True)
    async def action_new_order(self) -> None:
        if not self.app.state.is_staff:
            return
        await self.app.push_screen_wait(OrderFormModal())
