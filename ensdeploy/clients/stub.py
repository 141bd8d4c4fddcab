from __future__ import annotations

import hashlib
from dataclasses import dataclass, field

from ensdeploy.domain.models import NamingUpdatePayload, Notice

MAINNET_CHAIN_ID = 1
STUB_RESOLVER_ADDRESS = "0x231b0Ee14048e9dCcD1d247744d114a4EB5E8E63"
# keccak256("setContenthash(bytes32,bytes)")[:4]
SET_CONTENTHASH_SELECTOR = "0x304e6ade"


@dataclass
class StubContentStoreUploader:
    uploads: list[str] = field(default_factory=list)
    addresses: dict[str, str] = field(default_factory=dict)

    async def upload(self, *, build_output_ref: str) -> str:
        self.uploads.append(build_output_ref)
        address = self.addresses.get(build_output_ref)
        if address is None:
            digest = hashlib.sha256(build_output_ref.encode("utf-8")).hexdigest()
            address = f"bafy{digest[:52]}"
        return address


@dataclass
class StubNamingPreparer:
    chain_id: int = MAINNET_CHAIN_ID
    target_contract: str = STUB_RESOLVER_ADDRESS
    calls: list[tuple[str, str]] = field(default_factory=list)

    async def prepare(self, *, deployment_id: str, content_address: str) -> NamingUpdatePayload:
        self.calls.append((deployment_id, content_address))
        encoded = content_address.encode("utf-8").hex()
        return NamingUpdatePayload(
            target_contract=self.target_contract,
            call_data=f"{SET_CONTENTHASH_SELECTOR}{encoded}",
            chain_id=self.chain_id,
        )


@dataclass
class StubSigner:
    connected: bool = True
    chain_id: int = MAINNET_CHAIN_ID
    sent: list[tuple[str, str]] = field(default_factory=list)

    def is_connected(self) -> bool:
        return self.connected

    async def get_active_chain_id(self) -> int:
        return self.chain_id

    async def send_transaction(self, *, to: str, data: str) -> str:
        self.sent.append((to, data))
        digest = hashlib.sha256(f"{to}:{data}:{len(self.sent)}".encode("utf-8")).hexdigest()
        return f"0x{digest}"


@dataclass
class StubChainVerifier:
    verified: bool = True
    receipts: list[str] = field(default_factory=list)

    async def wait_for_receipt(self, *, tx_ref: str) -> bool:
        self.receipts.append(tx_ref)
        return self.verified


@dataclass
class StubBuildCanceller:
    running: set[str] = field(default_factory=set)

    def cancel_build(self, *, deployment_id: str) -> bool:
        if deployment_id in self.running:
            self.running.discard(deployment_id)
            return True
        return False


@dataclass
class RecordingNotifier:
    notices: list[Notice] = field(default_factory=list)

    def notify(self, notice: Notice) -> None:
        self.notices.append(notice)
