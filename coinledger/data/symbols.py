"""Coin identifier normalization and market symbol resolution.

``normalize_coin_id`` is the only place coin ids are canonicalized; the
store, the executor and the sweeper all go through it.
"""

from __future__ import annotations

import re
from typing import Dict, Optional


QUOTE_ASSET = "USDT"

# CoinGecko-style ids whose Binance base asset differs from the id itself.
COIN_TO_BINANCE_SYMBOL: Dict[str, str] = {
    "bitcoin": "BTCUSDT",
    "ethereum": "ETHUSDT",
    "binancecoin": "BNBUSDT",
    "solana": "SOLUSDT",
    "cardano": "ADAUSDT",
    "ripple": "XRPUSDT",
    "polkadot": "DOTUSDT",
    "dogecoin": "DOGEUSDT",
    "avalanche-2": "AVAXUSDT",
    "polygon": "MATICUSDT",
    "matic-network": "MATICUSDT",
    "chainlink": "LINKUSDT",
    "litecoin": "LTCUSDT",
    "uniswap": "UNIUSDT",
    "bitcoin-cash": "BCHUSDT",
    "stellar": "XLMUSDT",
    "shiba-inu": "SHIBUSDT",
    "cosmos": "ATOMUSDT",
    "algorand": "ALGOUSDT",
    "filecoin": "FILUSDT",
    "tron": "TRXUSDT",
    "ethereum-classic": "ETCUSDT",
    "vechain": "VETUSDT",
    "theta-token": "THETAUSDT",
    "compound-governance-token": "COMPUSDT",
    "maker": "MKRUSDT",
    "wrapped-bitcoin": "WBTCUSDT",
    "tezos": "XTZUSDT",
    "monero": "XMRUSDT",
    "decentraland": "MANAUSDT",
    "the-sandbox": "SANDUSDT",
    "axie-infinity": "AXSUSDT",
    "enjincoin": "ENJUSDT",
    "near": "NEARUSDT",
    "aptos": "APTUSDT",
    "optimism": "OPUSDT",
    "arbitrum": "ARBUSDT",
    "immutable-x": "IMXUSDT",
}

_COIN_ID_RE = re.compile(r"^[a-z0-9]+(?:-[a-z0-9]+)*$")


def normalize_coin_id(coin_id: Optional[str]) -> str:
    """Trim and lower-case a coin identifier."""
    return (coin_id or "").strip().lower()


def resolve_market_symbol(coin_id: Optional[str]) -> Optional[str]:
    """Map a coin id to its USDT trading pair.

    Known ids go through the mapping table; any other well-formed id is
    upper-cased with hyphens removed and suffixed with ``USDT``.

    Returns:
        The market symbol, or None if the id cannot be traded
    """
    cid = normalize_coin_id(coin_id)
    if not cid:
        return None
    mapped = COIN_TO_BINANCE_SYMBOL.get(cid)
    if mapped:
        return mapped
    if not _COIN_ID_RE.match(cid):
        return None
    base = cid.replace("-", "").upper()
    if base == QUOTE_ASSET:
        return None
    return f"{base}{QUOTE_ASSET}"
