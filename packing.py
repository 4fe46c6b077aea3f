"""
Packing and logistics helpers for the back office.

Admins paste courier sheets or chat messages containing order numbers; the
helpers pick those numbers out, produce shipping labels and printable
packing slips, and mark whole batches as shipped.
"""
import logging
import re
from concurrent.futures import ThreadPoolExecutor
from html import escape
from typing import Dict, Iterable, List, Optional, Tuple

from errors import StoreError
from reservations import parse_date
from schemas import Order, OrderStatus

logger = logging.getLogger(__name__)

BRAND_NAME = "Once Upon"
BRAND_SUBTITLE = "Kuala Lumpur"
# Shorter digit runs in pasted text are quantities, postcodes fragments, etc.
MIN_ORDER_ID_DIGITS = 3


def extract_order_ids(text: str) -> List[str]:
    seen = []
    for match in re.findall(r"\d+", text or ""):
        if match not in seen:
            seen.append(match)
    return seen


def find_orders(orders: Iterable[Order], text: str) -> Tuple[List[Order], List[str]]:
    """Orders whose number appears in ``text``, plus pasted numbers that matched nothing."""
    wanted = extract_order_ids(text)
    found = [o for o in orders if str(o.id).strip() in wanted]
    found_ids = {str(o.id).strip() for o in found}
    missing = [i for i in wanted if len(i) >= MIN_ORDER_ID_DIGITS and i not in found_ids]
    return found, missing


def shipping_labels(orders: Iterable[Order]) -> str:
    blocks = []
    for order in orders:
        items = ", ".join(f"{i.name} (x{i.quantity})" for i in order.items)
        blocks.append(
            f"Order No: {order.id}\n"
            f"Name: {order.customer_name}\n"
            f"Phone: {order.customer_phone}\n"
            f"Address: {order.shipping_address}\n"
            f"Items: {items}"
        )
    return "\n\n----------------------------------------\n\n".join(blocks)


def mark_shipped(engine, orders: Iterable[Order], force: bool = False,
                 max_workers: int = 8) -> Dict[str, Optional[str]]:
    """Move every order to shipped in parallel.

    Returns ``{order_id: None}`` on success or the error message; one bad
    order does not stop the batch.
    """
    orders = list(orders)

    def ship(order: Order) -> Optional[str]:
        try:
            engine.update_status(order.id, OrderStatus.SHIPPED, order.status, force=force)
        except StoreError as exc:
            logger.warning("Could not mark order %s shipped: %s", order.id, exc.message)
            return exc.message
        return None

    if not orders:
        return {}
    with ThreadPoolExecutor(max_workers=min(max_workers, len(orders))) as pool:
        return dict(zip((o.id for o in orders), pool.map(ship, orders)))


def render_packing_slip_html(order: Order, brand: str = BRAND_NAME, subtitle: str = BRAND_SUBTITLE) -> str:
    # Basic printable HTML packing slip
    items_html = "".join([
        f"<tr><td><div class='item-name'>{escape(i.name)}</div>"
        f"<div class='item-meta'>{escape(i.collection or '')}</div></td>"
        f"<td class='qty-col'>{i.quantity}</td></tr>"
        for i in order.items
    ])
    gift_html = ""
    if order.is_gift:
        gift_html = f"""
        <div class='gift-message'>
          <div class='gift-title'>A Gift For You</div>
          <div class='gift-text'>To: {escape(order.gift_to or 'You')}<br/>From: {escape(order.gift_from or 'Someone Special')}</div>
        </div>
        """
    placed = parse_date(order.date).strftime("%d %b %Y")
    html = f"""
    <html>
    <head>
      <meta charset='utf-8' />
      <title>Packing Slip #{escape(order.id)}</title>
      <style>
        @page {{ size: A4; margin: 0; }}
        body {{ font-family: Georgia, serif; color:#1a1a1a; }}
        .container {{ max-width: 800px; margin: 0 auto; padding: 40px 50px; }}
        .header {{ text-align:center; border-bottom:1px solid #D9C4B8; margin-bottom:40px; }}
        .order-meta {{ display:flex; justify-content:space-between; text-transform:uppercase; color:#666; }}
        table {{ width:100%; border-collapse: collapse; }}
        th, td {{ border-bottom:1px solid #eee; padding:10px 0; }}
        .qty-col {{ width:60px; text-align:right; }}
        .item-meta {{ font-size:12px; color:#666; font-style:italic; }}
        .gift-message {{ background:#faf8f6; border:1px dashed #D9C4B8; padding:20px; text-align:center; }}
      </style>
    </head>
    <body>
      <div class='container'>
        <div class='header'>
          <h1>{escape(brand)}</h1>
          <p>{escape(subtitle)}</p>
        </div>
        <div class='order-meta'>
          <div>Order #{escape(order.id)}</div>
          <div>{placed}</div>
        </div>
        <h3>Ship To</h3>
        <p><strong>{escape(order.customer_name)}</strong><br/>{escape(order.shipping_address)}<br/>Phone: {escape(order.customer_phone)}<br/>Email: {escape(order.customer_email)}</p>
        {gift_html}
        <table>
          <thead>
            <tr><th>Item</th><th class='qty-col'>Qty</th></tr>
          </thead>
          <tbody>
            {items_html}
          </tbody>
        </table>
        <p class='footer'>Thank you</p>
      </div>
    </body>
    </html>
    """
    return html
