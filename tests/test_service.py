import base64
import struct
import unittest
from datetime import timedelta

from solders.keypair import Keypair
from solders.pubkey import Pubkey

from envelopekit.accounts import derive_claim_record, derive_envelope, derive_user_state
from envelopekit.config import EnvelopeConfig
from envelopekit.errors import DecodeError, UnknownFlowError, ValidationError
from envelopekit.instructions import DirectFixed, GroupFixed, GroupRandom
from envelopekit.lifecycle import TxStatus
from envelopekit.parser import (
    ClaimRecord,
    EnvelopeAccount,
    UserState,
    layout_for,
    pack_claim_record,
    pack_envelope,
    pack_user_state,
)
from envelopekit.rpc import CONFIRMED, SignatureStatus
from envelopekit.service import EnvelopeService
from envelopekit.testing import FakeLedger, sign_locally
from envelopekit.transaction import decode_base64, parse_transaction


class EnvelopeServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.ledger = FakeLedger()
        self.config = EnvelopeConfig(confirm_attempts=2)
        self.service = self._service(self.config)
        self.owner = Keypair()
        self.claimer = Keypair()
        self.program = Pubkey.from_string(self.config.program_id)

    def _service(self, config):
        return EnvelopeService(config, self.ledger, sleep=lambda _: None)

    def _instructions(self, flow):
        tx = parse_transaction(decode_base64(flow.transaction))
        return tx.message.instructions

    def test_create_prepends_init_for_new_owner(self) -> None:
        flow = self.service.build_unsigned_create(self.owner.pubkey(), GroupFixed(), 1_000_000, 2, 3_600)
        self.assertTrue(flow.includes_init)
        self.assertEqual(flow.envelope_id, 1)
        instructions = self._instructions(flow)
        self.assertEqual(len(instructions), 2)
        self.assertEqual(bytes(instructions[0].data), self.service.tables.instruction("init_user_state"))
        self.assertEqual(bytes(instructions[1].data)[:8], self.service.tables.instruction("create"))
        self.assertEqual(flow.addresses.envelope.address, derive_envelope(self.program, self.owner.pubkey(), 1).address)
        self.assertEqual(flow.blockhash, str(self.ledger.blockhash))

    def test_create_predicts_next_id_from_user_state(self) -> None:
        user_state = derive_user_state(self.program, self.owner.pubkey()).address
        self.ledger.accounts[user_state] = pack_user_state(UserState(self.owner.pubkey(), 4))
        flow = self.service.build_unsigned_create(self.owner.pubkey(), GroupRandom(), 500_000, 5, 3_600)
        self.assertFalse(flow.includes_init)
        self.assertEqual(flow.envelope_id, 5)
        self.assertEqual(len(self._instructions(flow)), 1)
        self.assertEqual(flow.to_dict()["addresses"]["envelope"], str(derive_envelope(self.program, self.owner.pubkey(), 5).address))

    def test_create_limits(self) -> None:
        with self.assertRaisesRegex(ValidationError, "exceeds the maximum"):
            self.service.build_unsigned_create(self.owner.pubkey(), GroupFixed(), 100_000_001, 2, 60)
        with self.assertRaisesRegex(ValidationError, "below the minimum"):
            self.service.build_unsigned_create(self.owner.pubkey(), GroupFixed(), 50_000, 10, 60)
        with self.assertRaises(ValidationError):
            self.service.build_unsigned_create(self.owner.pubkey(), DirectFixed(self.claimer.pubkey()), 50_000, 2, 60)
        self.assertEqual(self.ledger.checkpoint_calls, 0)

    def test_expiry_units_follow_config(self) -> None:
        service = self._service(EnvelopeConfig(expiry_unit="hours"))
        flow = service.build_unsigned_create(self.owner.pubkey(), GroupFixed(), 1_000_000, 2, timedelta(days=1))
        data = bytes(self._instructions(flow)[-1].data)
        self.assertEqual(struct.unpack("<Q", data[-8:])[0], 24)
        with self.assertRaises(ValidationError):
            service.build_unsigned_create(self.owner.pubkey(), GroupFixed(), 1_000_000, 2, timedelta(minutes=30))

    def test_expiry_timedelta_in_seconds(self) -> None:
        flow = self.service.build_unsigned_create(self.owner.pubkey(), GroupFixed(), 1_000_000, 2, timedelta(hours=2))
        data = bytes(self._instructions(flow)[-1].data)
        self.assertEqual(struct.unpack("<Q", data[-8:])[0], 7_200)

    def test_claim_flow_end_to_end(self) -> None:
        flow = self.service.build_unsigned_claim(self.owner.pubkey(), self.claimer.pubkey(), 3)
        self.assertEqual(flow.action, "claim")
        self.assertIsNotNone(flow.addresses.claim_record)
        signed = sign_locally(decode_base64(flow.transaction), [self.claimer])
        signature = parse_transaction(signed).signatures[0]
        self.ledger.statuses[signature] = [SignatureStatus(CONFIRMED, slot=95)]
        result = self.service.submit(flow.correlation_id, base64.b64encode(signed).decode())
        self.assertEqual(result.status, TxStatus.CONFIRMED)
        self.assertEqual(result.explorer_url, f"https://explorer.solana.com/tx/{signature}?cluster=devnet")
        with self.assertRaises(UnknownFlowError):
            self.service.submit(flow.correlation_id, signed)

    def test_owner_actions(self) -> None:
        for build, action in (
            (self.service.build_unsigned_refund, "refund"),
            (self.service.build_unsigned_cancel, "cancel"),
            (self.service.build_unsigned_close, "close"),
        ):
            flow = build(str(self.owner.pubkey()), 2)
            self.assertEqual(flow.action, action)
            self.assertTrue(flow.correlation_id.startswith(f"{action}_"))
            self.assertEqual(bytes(self._instructions(flow)[0].data), self.service.tables.instruction(action))

    def test_init_flow(self) -> None:
        flow = self.service.build_unsigned_init(self.owner.pubkey())
        self.assertIsNone(flow.envelope_id)
        self.assertEqual(self.service.manager.pending(), 1)

    def test_get_envelope(self) -> None:
        self.assertIsNone(self.service.get_envelope(self.owner.pubkey(), 1))
        account = EnvelopeAccount(self.owner.pubkey(), 1, GroupFixed(), 1_000_000, 2, 500_000, 1, 2_000_000_000, False)
        address = derive_envelope(self.program, self.owner.pubkey(), 1).address
        self.ledger.accounts[address] = pack_envelope(account, layout_for("padded"))
        fetched = self.service.get_envelope(self.owner.pubkey(), 1)
        self.assertEqual(fetched, account)
        self.assertEqual(fetched.remaining, 500_000)

    def test_abandoned_flows_do_not_accumulate(self) -> None:
        now = [0.0]
        service = EnvelopeService(
            EnvelopeConfig(flow_ttl=120), self.ledger, sleep=lambda _: None, clock=lambda: now[0]
        )
        for envelope_id in range(1, 51):
            service.build_unsigned_refund(self.owner.pubkey(), envelope_id)
        self.assertEqual(service.manager.pending(), 50)
        now[0] += 121
        service.build_unsigned_refund(self.owner.pubkey(), 51)
        self.assertEqual(service.manager.pending(), 1)

    def test_verify_discriminators(self) -> None:
        service = self._service(EnvelopeConfig(verify_discriminators=True))
        account = EnvelopeAccount(self.owner.pubkey(), 1, GroupFixed(), 1_000_000, 2, 0, 0, 2_000_000_000, False)
        address = derive_envelope(self.program, self.owner.pubkey(), 1).address
        layout = layout_for("padded")
        self.ledger.accounts[address] = pack_envelope(account, layout)
        with self.assertRaises(DecodeError):
            service.get_envelope(self.owner.pubkey(), 1)
        self.assertEqual(self.service.get_envelope(self.owner.pubkey(), 1), account)
        self.ledger.accounts[address] = pack_envelope(account, layout, service.tables.accounts["EnvelopeAccount"])
        self.assertEqual(service.get_envelope(self.owner.pubkey(), 1), account)

    def test_get_claim_record(self) -> None:
        envelope = derive_envelope(self.program, self.owner.pubkey(), 1).address
        address = derive_claim_record(self.program, envelope, self.claimer.pubkey()).address
        record = ClaimRecord(self.claimer.pubkey(), 1, 500_000, 1_700_000_000)
        self.ledger.accounts[address] = pack_claim_record(record)
        self.assertEqual(self.service.get_claim_record(self.owner.pubkey(), 1, self.claimer.pubkey()), record)

    def test_invalid_owner(self) -> None:
        with self.assertRaises(ValidationError):
            self.service.build_unsigned_init("not-a-key")

    def test_explorer_url(self) -> None:
        service = self._service(EnvelopeConfig(network="mainnet"))
        self.assertEqual(service.explorer_url("abc"), "https://explorer.solana.com/tx/abc")


if __name__ == "__main__":
    unittest.main()
