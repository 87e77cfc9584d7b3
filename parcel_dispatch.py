#!/usr/bin/env python3
"""
Parcel Dispatch Pipeline
------------------------
- Reads the item catalog (data/items.json) and the orders (data/orders.json).
- Resolves every order line against the catalog; an unknown item id aborts the run.
- Packs each order into parcels of at most 30 kg (see parcel_packer.py).
- Fetches one tracking code per parcel from an external HTTP service, strictly
  one request at a time (the service is rate limited).
- Exports:
  - data/parcels.json   (one record per parcel, with weight and cost)
  - data/parcels.csv    (flat table, one row per parcel)
  - data/palettes.md    (parcels, weight and cost per palette)

Configuration
-------------
- `.env` may set TRACKING_API_URL (loaded with python-dotenv).
- `shipping.yaml` may override the parcel weight limit, the orders per palette
  and the cost tiers:
    shipping:
      parcel_max_weight: 30
      max_parcel_per_palette: 15
      cost_tiers: [[1, 1], [5, 2], [10, 3], [20, 5], [30, 10]]

Progress Reporting (script-level)
---------------------------------
- Flags: `--quiet`, `--verbose`, `--progress-json <path>`.
- Phases: load catalog → load orders → generate parcels → price → export.
"""

import argparse
import json
import os
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import pandas as pd
import requests
import yaml
from dotenv import load_dotenv

import parcel_packer
from parcel_packer import (
    Item,
    Order,
    OrderLine,
    Parcel,
    ShippingError,
    compute_total_amount,
    find_item_by_id,
    generate_parcels,
    palette_summary,
    parcel_cost,
    parcel_weight,
)


# ---------------- Progress utils (lightweight) ----------------
@dataclass
class Step:
    name: str
    status: str = "pending"  # pending | in_progress | completed | failed
    started_at: Optional[float] = None
    ended_at: Optional[float] = None
    items_done: int = 0


class ProgressReporter:
    def __init__(
        self,
        script: str,
        quiet: bool = False,
        verbose: bool = False,
        json_path: Optional[str] = None,
    ) -> None:
        self.script = script
        self.quiet = quiet
        self.verbose = verbose
        self.json_path = json_path
        self.t0 = time.time()
        self.steps: List[Step] = []
        self._isatty = sys.stdout.isatty()

    def start(self, name: str) -> Step:
        st = Step(name=name, status="in_progress", started_at=time.time())
        self.steps.append(st)
        if self.verbose and not self.quiet:
            print(f"→ {name}…")
        return st

    def tick(self, st: Step) -> None:
        st.items_done += 1
        if not self.quiet:
            line = f"{st.name}: {st.items_done}  elapsed {int(time.time()-st.started_at)}s"
            # same console line while on a TTY
            end = "\r" if self._isatty and not self.verbose else "\n"
            print(line, end=end, flush=True)

    def end(self, st: Step, status: str = "completed") -> None:
        st.status = status
        st.ended_at = time.time()
        if not self.quiet:
            elapsed = int((st.ended_at - (st.started_at or st.ended_at)))
            mark = "✓" if status == "completed" else "✗"
            print(f"{mark} {st.name} in {elapsed}s")

    def finalize(self, totals: Dict[str, Any], errors: List[str]) -> None:
        elapsed = int(time.time() - self.t0)
        if not self.quiet:
            print(
                f"\n    Orders: {totals.get('orders', 0)}"
                f"\n    Parcels: {totals.get('parcels', 0)}"
                f"\n    Total cost: {totals.get('total_cost', 0):g}€\n"
            )
            print(
                f"[dispatch] Summary: palettes={totals.get('palettes', 0)}, "
                f"items_total={totals.get('items_total', 0)}, files={totals.get('outputs', 0)} | elapsed={elapsed}s"
            )
            if errors:
                print(f"Warnings: {len(errors)}")
                if self.verbose:
                    for e in errors:
                        print(f"  - {e}")
        if self.json_path:
            payload = {
                "script": self.script,
                "started_at": self.t0,
                "ended_at": time.time(),
                "elapsed_s": elapsed,
                "steps": [
                    {
                        "name": s.name,
                        "status": s.status,
                        "started_at": s.started_at,
                        "ended_at": s.ended_at,
                        "items_done": s.items_done,
                    }
                    for s in self.steps
                ],
                "totals": totals,
                "errors": errors,
            }
            Path(self.json_path).write_text(json.dumps(payload, indent=2), encoding="utf-8")


# ---------------- Config ----------------
DATA_DIR = Path("data")
ITEMS_FILE = DATA_DIR / "items.json"
ORDERS_FILE = DATA_DIR / "orders.json"
PARCELS_FILE = DATA_DIR / "parcels.json"
PARCELS_CSV = DATA_DIR / "parcels.csv"
PALETTES_MD = DATA_DIR / "palettes.md"
CONFIG_FILE = "shipping.yaml"

TRACKING_API_URL = "https://helloacm.com/api/random/?n=15"
RETRY_STATUSES = (429, 500, 502, 503, 504)


def load_tracking_url() -> str:
    load_dotenv()
    return os.getenv("TRACKING_API_URL") or TRACKING_API_URL


def apply_shipping_config(path: str) -> bool:
    """Apply shipping overrides from YAML. Returns True when something was applied.

    Expected structure:
      shipping:
        parcel_max_weight: 30
        max_parcel_per_palette: 15
        cost_tiers: [[bound_kg, cost], ...]
    """
    p = Path(path)
    if not p.exists():
        return False
    try:
        data = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError:
        print(f"⚠️ Failed to parse {path}; using built-in defaults.")
        return False
    shipping = data.get("shipping", {}) if isinstance(data, dict) else {}
    if not isinstance(shipping, dict) or not shipping:
        return False

    tiers = shipping.get("cost_tiers")
    if tiers is not None and not (
        isinstance(tiers, list)
        and all(isinstance(t, list) and len(t) == 2 and all(isinstance(x, (int, float)) for x in t) for t in tiers)
    ):
        print(f"⚠️ {path}: cost_tiers must be a list of [bound, cost] pairs; using built-in tiers.")
        tiers = None
    try:
        parcel_packer.configure(
            parcel_max_weight=shipping.get("parcel_max_weight"),
            max_parcel_per_palette=shipping.get("max_parcel_per_palette"),
            cost_tiers=tiers,
        )
    except (TypeError, ValueError) as e:
        print(f"⚠️ {path}: {e} Using built-in defaults.")
        return False
    return True


# ------------- Tracking codes -----------------
def backoff_sleep(attempt: int) -> None:
    time.sleep(min(2 ** attempt, 10))


def _decode_tracking_code(r: requests.Response) -> str:
    # the service answers with a JSON string, e.g. "\"k2x9...\""
    try:
        data = r.json()
    except ValueError:
        data = r.text
    if not isinstance(data, str):
        raise ShippingError(f"The tracking service returned no tracking code: {r.text[:80]!r}")
    code = data.strip()
    if not code:
        raise ShippingError("The tracking service returned an empty tracking code")
    return code


def fetch_tracking_code(url: Optional[str] = None, attempts: int = 1, session: Optional[requests.Session] = None) -> str:
    """POST once to the tracking service and return the code it mints.

    With attempts > 1, rate-limit and server errors are retried with backoff.
    The last failure is raised as requests.HTTPError.
    """
    http = session or requests
    url = url or TRACKING_API_URL
    attempts = max(1, attempts)
    for attempt in range(attempts):
        r = http.post(url, timeout=15)
        if r.status_code in RETRY_STATUSES and attempt < attempts - 1:
            backoff_sleep(attempt)
            continue
        r.raise_for_status()
        return _decode_tracking_code(r)
    # unreachable: the last attempt returns or raises
    raise ShippingError(f"No tracking code obtained from {url}")


class OfflineTrackingCodes:
    """Local, sequential tracking codes for dry runs without the service."""

    def __init__(self, prefix: str = "OFFLINE") -> None:
        self.prefix = prefix
        self.issued = 0

    def __call__(self) -> str:
        self.issued += 1
        return f"{self.prefix}{self.issued:08d}"


# ------------- Loaders -----------------
def _read_records(path: str, key: str) -> List[Dict[str, Any]]:
    raw = json.loads(Path(path).read_text(encoding="utf-8"))
    if not isinstance(raw, dict) or key not in raw:
        raise ValueError(f"{path}: expected a JSON object with an '{key}' list.")
    records = raw[key]
    if not isinstance(records, list):
        raise ValueError(f"{path}: '{key}' must be a list.")
    return records


def load_items(path: str) -> List[Item]:
    out: List[Item] = []
    for r in _read_records(path, "items"):
        weight = float(r["weight"])
        if weight < 0:
            raise ValueError(f"Item {r['id']}: weight must be >= 0 (got {weight:g}).")
        out.append(Item(id=str(r["id"]), name=str(r.get("name", "")), weight=weight))
    return out


def load_orders(path: str, items: List[Item]) -> List[Order]:
    catalog: Dict[str, Item] = {}
    for it in items:
        catalog.setdefault(it.id, it)

    out: List[Order] = []
    for r in _read_records(path, "orders"):
        lines = []
        for ln in r.get("items", []):
            item = find_item_by_id(str(ln["item_id"]), catalog)
            quantity = int(str(ln["quantity"]).strip())
            if quantity < 1:
                raise ValueError(f"Order {r['id']}: quantity for {item.id} must be >= 1 (got {quantity}).")
            lines.append(OrderLine(item=item, quantity=quantity))
        out.append(
            Order(
                id=str(r["id"]),
                date=pd.to_datetime(r["date"]).to_pydatetime(),
                lines=tuple(lines),
            )
        )
    return out


# ------------- Exports -----------------
def parcel_to_record(parcel: Parcel) -> Dict[str, Any]:
    return {
        "order_id": parcel.order.id,
        "order_date": parcel.order.date.isoformat(),
        "palette_id": parcel.palette_id,
        "tracking_id": parcel.tracking_id,
        "weight": parcel_weight(parcel),
        "cost": parcel_cost(parcel),
        "items": [{"id": it.id, "name": it.name, "weight": it.weight} for it in parcel.items],
    }


def write_result(parcels: List[Parcel], path: str) -> None:
    Path(path).parent.mkdir(parents=True, exist_ok=True)
    payload = {"parcels": [parcel_to_record(p) for p in parcels]}
    Path(path).write_text(json.dumps(payload, indent=2), encoding="utf-8")


def parcels_frame(parcels: List[Parcel]) -> pd.DataFrame:
    rows = [
        {
            "Order ID": p.order.id,
            "Palette ID": p.palette_id,
            "Tracking ID": p.tracking_id,
            "Items": len(p.items),
            "Weight (kg)": parcel_weight(p),
            "Cost (€)": parcel_cost(p),
        }
        for p in parcels
    ]
    return pd.DataFrame(rows, columns=["Order ID", "Palette ID", "Tracking ID", "Items", "Weight (kg)", "Cost (€)"])


def export_parcels_csv(df: pd.DataFrame, path: str) -> None:
    Path(path).parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(path, index=False)


def export_palettes_md(df: pd.DataFrame, path: str) -> None:
    agg = (df.groupby("Palette ID", as_index=False)
             .agg(Orders=("Order ID", "nunique"),
                  Parcels=("Tracking ID", "count"),
                  **{"Weight (kg)": ("Weight (kg)", "sum"),
                     "Cost (€)": ("Cost (€)", "sum")}))
    Path(path).parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        f.write("# Palettes\n\n")
        f.write("| Palette | Orders | Parcels | Weight (kg) | Cost (€) |\n")
        f.write("|---|---|---|---|---|\n")
        for _, row in agg.iterrows():
            f.write(
                f"| {int(row['Palette ID'])} | {int(row['Orders'])} | {int(row['Parcels'])} "
                f"| {float(row['Weight (kg)']):.2f} | {float(row['Cost (€)']):g} |\n"
            )
        f.write(f"\nTotal: {int(agg['Parcels'].sum())} parcels, {float(agg['Cost (€)'].sum()):g}€\n")


# ---------------- Main ----------------
def dispatch_warnings(orders: List[Order], parcels: List[Parcel]) -> List[str]:
    """Known quirks of the packing rules, surfaced instead of silently fixed."""
    warnings: List[str] = []
    for o in orders:
        if not o.lines:
            warnings.append(f"empty_order:{o.id}")
    for palette_id, count in sorted(palette_summary(parcels).items()):
        if count > parcel_packer.MAX_PARCEL_PER_PALETTE:
            warnings.append(f"palette_over_capacity:{palette_id}:{count}")
    return warnings


def main(argv: Optional[List[str]] = None) -> None:
    ap = argparse.ArgumentParser(description="Pack orders into parcels, assign palettes and tracking codes")
    ap.add_argument("--items", default=str(ITEMS_FILE), help="Path to the item catalog JSON")
    ap.add_argument("--orders", default=str(ORDERS_FILE), help="Path to the orders JSON")
    ap.add_argument("--output", default=str(PARCELS_FILE), help="Path of the parcels JSON to write")
    ap.add_argument("--csv", default=str(PARCELS_CSV), help="Path of the parcels CSV to write")
    ap.add_argument("--palettes-md", default=str(PALETTES_MD), help="Path of the palette summary markdown to write")
    ap.add_argument("--config", default=CONFIG_FILE, help="Shipping YAML overriding weight limit, palette size and cost tiers")
    ap.add_argument("--tracking-url", default=None, help="Tracking service URL (default: $TRACKING_API_URL or built-in)")
    ap.add_argument("--tracking-retries", type=int, default=0, help="Retries per tracking code on 429/5xx (default: 0)")
    ap.add_argument("--offline-tracking", action="store_true", help="Mint local tracking codes instead of calling the service")
    ap.add_argument("--progress-json", default=None, help="Write progress JSON to this path")
    ap.add_argument("--quiet", action="store_true", help="Only print errors")
    ap.add_argument("--verbose", action="store_true", help="Print step-by-step logs")
    args = ap.parse_args(argv)

    for label, path in (("Catalog", args.items), ("Orders", args.orders)):
        if not Path(path).exists():
            print(f"{label} file not found: {path}")
            sys.exit(1)

    apply_shipping_config(args.config)

    tracking_code: Callable[[], str]
    if args.offline_tracking:
        tracking_code = OfflineTrackingCodes()
    else:
        url = args.tracking_url or load_tracking_url()
        session = requests.Session()
        tracking_code = lambda: fetch_tracking_code(url, attempts=args.tracking_retries + 1, session=session)  # noqa: E731

    prog = ProgressReporter(script="dispatch", quiet=args.quiet, verbose=args.verbose, json_path=args.progress_json)
    st: Optional[Step] = None
    try:
        st = prog.start("Load catalog")
        items = load_items(args.items)
        prog.end(st)

        st = prog.start("Load orders")
        orders = load_orders(args.orders, items)
        prog.end(st)

        st = prog.start("Generate parcels")
        parcels = generate_parcels(
            orders,
            tracking_code,
            on_parcel=lambda p: prog.tick(st),
        )
        prog.end(st)

        st = prog.start("Compute cost")
        total_cost = compute_total_amount(parcels)
        prog.end(st)

        st = prog.start("Export files")
        write_result(parcels, args.output)
        df = parcels_frame(parcels)
        export_parcels_csv(df, args.csv)
        export_palettes_md(df, args.palettes_md)
        prog.end(st)
    except (ShippingError, requests.RequestException, ValueError) as e:
        if st is not None:
            prog.end(st, status="failed")
        print(f"❌ {e}")
        sys.exit(1)

    errors = dispatch_warnings(orders, parcels)
    prog.finalize(
        totals={
            "orders": len(orders),
            "parcels": len(parcels),
            "palettes": len(palette_summary(parcels)),
            "items_total": sum(len(p.items) for p in parcels),
            "total_cost": total_cost,
            "outputs": 3,
        },
        errors=errors,
    )
    if not args.quiet:
        print(f"✅ Saved: {args.output}, {args.csv}, {args.palettes_md}")


if __name__ == "__main__":
    main()
