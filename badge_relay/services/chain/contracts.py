"""
Contract ABIs used by the relay.
"""

XPBADGE_ABI = [
    {
        "inputs": [
            {"name": "player", "type": "address"},
            {"name": "tokenId", "type": "uint256"},
            {"name": "xp", "type": "uint256"},
            {"name": "season", "type": "uint256"}
        ],
        "name": "mintBadge",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function"
    },
    {
        "inputs": [],
        "name": "getCurrentSeason",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function"
    },
    {
        "inputs": [
            {"name": "role", "type": "bytes32"},
            {"name": "account", "type": "address"}
        ],
        "name": "hasRole",
        "outputs": [{"name": "", "type": "bool"}],
        "stateMutability": "view",
        "type": "function"
    },
    {
        "inputs": [],
        "name": "MINTER_ROLE",
        "outputs": [{"name": "", "type": "bytes32"}],
        "stateMutability": "view",
        "type": "function"
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "player", "type": "address"},
            {"indexed": True, "name": "tokenId", "type": "uint256"},
            {"indexed": False, "name": "xp", "type": "uint256"},
            {"indexed": False, "name": "season", "type": "uint256"}
        ],
        "name": "BadgeMinted",
        "type": "event"
    },
]

MINT_BADGE_SIGNATURE = (
    "function mintBadge(address player, uint256 tokenId, uint256 xp, uint256 season)"
)

HODL_MANAGER_ABI = [
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "user", "type": "address"},
            {"indexed": False, "name": "xpEarned", "type": "uint256"},
            {"indexed": False, "name": "cpEarned", "type": "uint256"},
            {"indexed": False, "name": "dbpMinted", "type": "uint256"},
            {"indexed": False, "name": "duration", "type": "uint256"},
            {"indexed": False, "name": "bonusThrowUsed", "type": "bool"},
            {"indexed": False, "name": "boostsUsed", "type": "uint256[]"}
        ],
        "name": "RunCompleted",
        "type": "event"
    },
]

XP_VERIFIER_ABI = [
    {
        "inputs": [
            {"name": "claimId", "type": "uint256"},
            {"name": "proof", "type": "bytes"}
        ],
        "name": "verifyAndStoreClaim",
        "outputs": [{"name": "", "type": "bool"}],
        "stateMutability": "nonpayable",
        "type": "function"
    },
]
