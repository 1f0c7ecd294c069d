from __future__ import annotations

from web3 import Web3

ERC20_ABI = [
    {
        "constant": True,
        "inputs": [],
        "name": "decimals",
        "outputs": [{"name": "", "type": "uint8"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [{"name": "owner", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [
            {"name": "owner", "type": "address"},
            {"name": "spender", "type": "address"},
        ],
        "name": "allowance",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "constant": False,
        "inputs": [
            {"name": "spender", "type": "address"},
            {"name": "amount", "type": "uint256"},
        ],
        "name": "approve",
        "outputs": [{"name": "", "type": "bool"}],
        "stateMutability": "nonpayable",
        "type": "function",
    },
]

_BUY_INPUTS = [
    {"internalType": "uint256", "name": "amountOutMin", "type": "uint256"},
    {"internalType": "address[]", "name": "path", "type": "address[]"},
    {"internalType": "address", "name": "to", "type": "address"},
    {"internalType": "uint256", "name": "deadline", "type": "uint256"},
]
_SELL_INPUTS = [
    {"internalType": "uint256", "name": "amountIn", "type": "uint256"},
    {"internalType": "uint256", "name": "amountOutMin", "type": "uint256"},
    {"internalType": "address[]", "name": "path", "type": "address[]"},
    {"internalType": "address", "name": "to", "type": "address"},
    {"internalType": "uint256", "name": "deadline", "type": "uint256"},
]
_BUY_SIGNATURE_TYPES = "uint256,address[],address,uint256"

FEE_ON_TRANSFER_SUFFIX = "SupportingFeeOnTransferTokens"


def router_abi(buy_function: str, sell_function: str) -> list[dict]:
    """Minimal V2-style router ABI for the configured native<->token entry points."""
    amounts_out = {
        "inputs": [
            {"internalType": "uint256", "name": "amountIn", "type": "uint256"},
            {"internalType": "address[]", "name": "path", "type": "address[]"},
        ],
        "name": "getAmountsOut",
        "outputs": [{"internalType": "uint256[]", "name": "amounts", "type": "uint256[]"}],
        "stateMutability": "view",
        "type": "function",
    }
    abi = [amounts_out]
    for name in (buy_function, buy_function + FEE_ON_TRANSFER_SUFFIX):
        abi.append(
            {
                "inputs": list(_BUY_INPUTS),
                "name": name,
                "outputs": [{"internalType": "uint256[]", "name": "amounts", "type": "uint256[]"}],
                "stateMutability": "payable",
                "type": "function",
            }
        )
    abi.append(
        {
            "inputs": list(_SELL_INPUTS),
            "name": sell_function,
            "outputs": [{"internalType": "uint256[]", "name": "amounts", "type": "uint256[]"}],
            "stateMutability": "nonpayable",
            "type": "function",
        }
    )
    return abi


def function_selector(signature: str) -> str:
    return "0x" + bytes(Web3.keccak(text=signature)[:4]).hex()


def buy_selectors(buy_function: str) -> dict[str, str]:
    """Selector registry for mirrored buys: ``{"0x7ff36ab5": "swapExactETHForTokens", ...}``."""
    out: dict[str, str] = {}
    for name in (buy_function, buy_function + FEE_ON_TRANSFER_SUFFIX):
        out[function_selector(f"{name}({_BUY_SIGNATURE_TYPES})")] = name
    return out
