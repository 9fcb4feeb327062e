import os, json, logging, math, re, requests
from flask import Flask, request, jsonify, make_response
from typing import List, Dict, Any, Optional, Callable, Sequence
from datetime import datetime, timezone
from dateutil import parser as date_parser
from io import StringIO
import csv

# ==== Config ====
BL_API_URL = os.environ.get("BL_API_URL", "https://api.baselinker.com/connector.php")
BL_TOKEN = os.environ.get("BL_TOKEN") or os.environ.get("BASELINKER_API_TOKEN")
SHARED_KEY = os.environ.get("BL_SHARED_KEY", "")
TIMEOUT = float(os.environ.get("BL_TIMEOUT", "30"))
DEFAULT_LIMIT = int(os.environ.get("ORDERS_DEFAULT_LIMIT", "100"))

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
log = logging.getLogger("bl_orders")

app = Flask(__name__)
app.json.sort_keys = False


class UpstreamError(RuntimeError):
    """BaseLinker answered with a non-2xx status."""

    def __init__(self, status: int, body: Any):
        super().__init__(f"BaseLinker returned HTTP {status}")
        self.status = status
        self.body = body


# ==== Helpers ====

def http_error(status: int, msg: str, details: Any = None):
    payload = {"error": msg}
    if details is not None:
        payload["details"] = details
    return make_response(jsonify(payload), status)

def key_ok() -> bool:
    if not SHARED_KEY:
        return True
    supplied = request.args.get("key") or request.headers.get("X-App-Key")
    auth = request.headers.get("Authorization") or ""
    if not supplied and auth.lower().startswith("bearer "):
        supplied = auth[7:].strip()
    return supplied == SHARED_KEY

def parse_limit(raw: Optional[str]) -> int:
    try:
        n = int(str(raw).strip())
    except (TypeError, ValueError):
        return DEFAULT_LIMIT
    return n or DEFAULT_LIMIT

_UNIX_RE = re.compile(r"^[0-9]+$")

def parse_date_to_unix(value: Optional[str]) -> Optional[int]:
    """ISO/calendar string or UNIX seconds -> UNIX seconds. None when absent or unparseable.

    Strings without a zone are read as UTC.
    """
    if value is None:
        return None
    s = str(value).strip()
    if not s:
        return None
    if _UNIX_RE.match(s):
        return int(s)
    try:
        dt = date_parser.parse(s)
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return math.floor(dt.timestamp())
    except (ValueError, OverflowError):
        return None

def unix_to_iso(value: Any) -> str:
    if not value:
        return ""
    try:
        dt = datetime.fromtimestamp(float(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        return ""
    return dt.strftime("%Y-%m-%dT%H:%M:%S") + ".%03dZ" % (dt.microsecond // 1000)

def to_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False, separators=(",", ":"))
    return str(value)

def first_present(obj: Any, keys: Sequence[str]) -> Any:
    if not isinstance(obj, dict):
        return None
    for k in keys:
        if obj.get(k) is not None:
            return obj[k]
    return None

# ==== BaseLinker client ====

def bl_call(method: str, params: dict) -> Any:
    if not BL_TOKEN:
        raise RuntimeError("BL_TOKEN not set")
    data = {"token": BL_TOKEN, "method": method, "parameters": json.dumps(params)}
    log.info("BaseLinker %s params=%s", method, sorted(params))
    r = requests.post(BL_API_URL, data=data, timeout=TIMEOUT)
    if not r.ok:
        try:
            body = r.json()
        except ValueError:
            body = r.text
        raise UpstreamError(r.status_code, body)
    return r.json()

def build_order_params(date_from: Optional[str], date_to: Optional[str], limit: Optional[str]) -> Dict[str, Any]:
    params: Dict[str, Any] = {}
    d = parse_date_to_unix(date_from)
    if d is not None:
        params["date_confirmed_from"] = d
    d = parse_date_to_unix(date_to)
    if d is not None:
        params["date_confirmed_to"] = d
    params["limit"] = parse_limit(limit)
    return params

# ==== Order list resolution ====
# Each strategy takes the raw body and returns the order list or None.

def _orders_field(body: Any) -> Optional[list]:
    v = body.get("orders") if isinstance(body, dict) else None
    return v if isinstance(v, list) else None

def _result_field(body: Any) -> Optional[list]:
    v = body.get("result") if isinstance(body, dict) else None
    return v if isinstance(v, list) else None

def _bare_list(body: Any) -> Optional[list]:
    return body if isinstance(body, list) else None

def _orders_list_field(body: Any) -> Optional[list]:
    v = body.get("orders_list") if isinstance(body, dict) else None
    if isinstance(v, dict):
        return list(v.values())
    return v if isinstance(v, list) else None

ORDER_LIST_STRATEGIES: List[Callable[[Any], Optional[list]]] = [
    _orders_field,
    _result_field,
    _bare_list,
    _orders_list_field,
]

def resolve_orders(body: Any) -> Optional[list]:
    for strategy in ORDER_LIST_STRATEGIES:
        orders = strategy(body)
        if orders is not None:
            return orders
    return None

# ==== CSV projection (one row per order line) ====

ORDER_ID_KEYS = ("order_id", "order_number", "order_no")
ORDER_DATE_KEYS = ("date_confirmed", "date_add")
CUSTOMER_NAME_KEYS = ("customer_name", "name")
TOTAL_KEYS = ("total_price", "total_brutto", "total")
ITEMS_KEYS = ("items", "products", "order_products", "order_items")
ITEM_FIELDS = ("sku", "name", "quantity", "price_brutto")

CSV_HEADER = [
    "order_id",
    "date_confirmed",
    "customer_name",
    "total_price",
    "item_sku",
    "item_name",
    "item_quantity",
    "item_price_brutto",
]

def order_date(order: dict) -> str:
    for k in ORDER_DATE_KEYS:
        if order.get(k):
            return unix_to_iso(order[k])
    return ""

def customer_name(order: dict) -> str:
    cust = order.get("customer")
    if isinstance(cust, dict):
        if cust.get("name"):
            return to_text(cust["name"])
        composed = f"{to_text(cust.get('first_name'))} {to_text(cust.get('last_name'))}".strip()
        if composed:
            return composed
    return to_text(next((order[k] for k in CUSTOMER_NAME_KEYS if order.get(k)), None))

def order_items(order: dict) -> List[dict]:
    items = first_present(order, ITEMS_KEYS)
    if isinstance(items, dict):
        items = list(items.values())
    if not isinstance(items, list):
        return []
    return [it for it in items if isinstance(it, dict)]

def order_rows(order: Any) -> List[List[str]]:
    if not isinstance(order, dict):
        order = {}
    head = [
        to_text(first_present(order, ORDER_ID_KEYS)),
        order_date(order),
        customer_name(order),
        to_text(first_present(order, TOTAL_KEYS)),
    ]
    items = order_items(order)
    if not items:
        return [head + [""] * len(ITEM_FIELDS)]
    return [head + [to_text(it.get(f)) for f in ITEM_FIELDS] for it in items]

def orders_to_csv(orders: List[Any]) -> str:
    buf = StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    writer.writerow(CSV_HEADER)
    for o in orders:
        writer.writerows(order_rows(o))
    return buf.getvalue()

# ==== ROUTES ====

@app.get("/api/orders")
def orders_feed():
    """
    Orders from BaseLinker getOrders as JSON (default) or item-exploded CSV.
    Query:
      format=json|csv
      date_from, date_to   ISO-8601 / calendar string or UNIX seconds
      limit=100
      key=...              only when BL_SHARED_KEY is set
    """
    if not key_ok():
        return http_error(401, "Unauthorized")

    fmt = (request.args.get("format") or "json").strip().lower()
    try:
        params = build_order_params(
            request.args.get("date_from"),
            request.args.get("date_to"),
            request.args.get("limit"),
        )
        data = bl_call("getOrders", params)

        orders = resolve_orders(data)
        if orders is None:
            if isinstance(data, dict) and data.get("status") == "ERROR":
                log.warning("BaseLinker error %s: %s", data.get("error_code"), data.get("error_message"))
            else:
                log.warning("No order list in BaseLinker response, returning raw body")
            return jsonify({"raw": data})

        if fmt == "csv":
            resp = make_response(orders_to_csv(orders))
            resp.headers["Content-Type"] = "text/csv; charset=utf-8"
            resp.headers["Content-Disposition"] = "attachment; filename=orders.csv"
            return resp

        return jsonify(orders)
    except UpstreamError as e:
        log.warning("%s", e)
        return http_error(502, "Error from BaseLinker", details=e.body)
    except Exception as e:
        log.error("Error in /api/orders: %s", e, exc_info=True)
        return http_error(500, str(e))

@app.get("/health")
def health():
    return jsonify({"ok": True, "version": "orders feed v2 (item-exploded csv)"})
