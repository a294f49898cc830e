"""Subset of the ReputationCard ABI used by the collectible engine."""

from web3 import Web3


def _input(name: str, type_: str, indexed: bool = None) -> dict:
    item = {"internalType": type_, "name": name, "type": type_}
    if indexed is not None:
        item["indexed"] = indexed
    return item


TEMPLATE_STRUCT_COMPONENTS = [
    _input("templateId", "uint256"),
    _input("title", "string"),
    _input("category", "string"),
    _input("description", "string"),
    _input("value", "uint256"),
    _input("issuer", "address"),
    _input("maxSupply", "uint256"),
    _input("currentSupply", "uint256"),
    _input("startTime", "uint256"),
    _input("endTime", "uint256"),
    _input("eligibilityType", "uint8"),
    _input("eligibilityData", "bytes"),
    _input("isPaused", "bool"),
    _input("isActive", "bool"),
    _input("metadataURI", "string"),
    _input("rarityTier", "uint8"),
]

COLLECTIBLE_ABI = [
    {
        "inputs": [_input("templateId", "uint256")],
        "name": "getCollectibleTemplate",
        "outputs": [
            {
                "components": TEMPLATE_STRUCT_COMPONENTS,
                "internalType": "struct ReputationCard.CollectibleTemplate",
                "name": "",
                "type": "tuple",
            }
        ],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "getTemplateCount",
        "outputs": [_input("", "uint256")],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "getAllTemplateIds",
        "outputs": [{"internalType": "uint256[]", "name": "", "type": "uint256[]"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [_input("templateId", "uint256"), _input("user", "address")],
        "name": "hasClaimedCollectible",
        "outputs": [_input("", "bool")],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [_input("templateId", "uint256"), _input("user", "address")],
        "name": "isEligibleToClaim",
        "outputs": [_input("", "bool")],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [_input("templateId", "uint256")],
        "name": "claimCollectible",
        "outputs": [_input("cardId", "uint256")],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "anonymous": False,
        "inputs": [
            _input("templateId", "uint256", indexed=True),
            _input("cardId", "uint256", indexed=True),
            _input("claimer", "address", indexed=True),
            _input("timestamp", "uint256", indexed=False),
        ],
        "name": "CollectibleClaimed",
        "type": "event",
    },
]

CLAIM_EVENT_SIGNATURE = "CollectibleClaimed(uint256,uint256,address,uint256)"
CLAIM_EVENT_TOPIC = Web3.to_hex(Web3.keccak(text=CLAIM_EVENT_SIGNATURE))
