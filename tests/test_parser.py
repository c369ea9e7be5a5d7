import struct
import unittest

from solders.pubkey import Pubkey

from envelopekit.errors import DecodeError, ValidationError
from envelopekit.instructions import CreateParams, DirectFixed, GroupFixed, InstructionCodec
from envelopekit.parser import (
    ClaimRecord,
    EnvelopeAccount,
    UserState,
    layout_for,
    pack_claim_record,
    pack_envelope,
    pack_user_state,
    parse_claim_record,
    parse_envelope,
    parse_user_state,
)
from envelopekit.tables import build_tables, discriminator

OWNER = Pubkey.new_unique()
CLAIMER = Pubkey.new_unique()
ENVELOPE_DISC = discriminator("account", "EnvelopeAccount")
TAIL = struct.Struct("<QQQQq?")


def _raw_envelope(variant_bytes: bytes, tail: bytes) -> bytes:
    return ENVELOPE_DISC + bytes(OWNER) + struct.pack("<Q", 7) + variant_bytes + tail


class EnvelopeLayoutTests(unittest.TestCase):
    def setUp(self) -> None:
        self.tail = TAIL.pack(1_000_000, 2, 500_000, 1, 1_700_000_000, False)

    def test_padded_group_fixed_skips_filler(self) -> None:
        raw = _raw_envelope(b"\x01" + bytes(32), self.tail)
        self.assertEqual(len(raw), 122)
        account = parse_envelope(raw, layout_for("padded"))
        self.assertEqual(account.owner, OWNER)
        self.assertEqual(account.envelope_id, 7)
        self.assertEqual(account.variant, GroupFixed())
        self.assertEqual(account.total_amount, 1_000_000)
        self.assertEqual(account.total_slots, 2)
        self.assertEqual(account.withdrawn_amount, 500_000)
        self.assertEqual(account.claimed_count, 1)
        self.assertEqual(account.expiry, 1_700_000_000)
        self.assertFalse(account.cancelled)
        self.assertEqual(account.remaining, 500_000)
        self.assertEqual(account.slots_left, 1)

    def test_aligned_group_fixed_skips_wider_filler(self) -> None:
        raw = _raw_envelope(b"\x01" + bytes(39), self.tail)
        account = parse_envelope(raw, layout_for("aligned"))
        self.assertEqual(account.total_amount, 1_000_000)
        self.assertEqual(account.remaining, 500_000)

    def test_compact_group_fixed_has_no_filler(self) -> None:
        raw = _raw_envelope(b"\x01", self.tail)
        self.assertEqual(len(raw), 90)
        account = parse_envelope(raw, layout_for("compact"))
        self.assertEqual(account.total_amount, 1_000_000)
        self.assertEqual(account.claimed_count, 1)

    def test_padded_direct_fixed_reads_allowed_claimer(self) -> None:
        tail = TAIL.pack(50_000, 1, 0, 0, 1_700_000_000, True)
        raw = _raw_envelope(b"\x00" + bytes(CLAIMER), tail)
        account = parse_envelope(raw, layout_for("padded"))
        self.assertEqual(account.variant, DirectFixed(CLAIMER))
        self.assertTrue(account.cancelled)
        self.assertFalse(account.is_claimable(now=0))

    def test_pack_matches_golden_bytes_for_each_layout(self) -> None:
        account = EnvelopeAccount(OWNER, 7, GroupFixed(), 1_000_000, 2, 500_000, 1, 1_700_000_000, False)
        cases = {
            "compact": b"\x01",
            "padded": b"\x01" + bytes(32),
            "aligned": b"\x01" + bytes(39),
        }
        for name, variant_bytes in cases.items():
            layout = layout_for(name)
            packed = pack_envelope(account, layout, ENVELOPE_DISC)
            self.assertEqual(packed, _raw_envelope(variant_bytes, self.tail), name)
            self.assertEqual(parse_envelope(packed, layout), account, name)

    def test_encoded_create_then_synthetic_account(self) -> None:
        codec = InstructionCodec(build_tables(), Pubkey.new_unique(), Pubkey.new_unique())
        created = codec.decode(codec.encode("create", CreateParams(GroupFixed(), 1_000_000, 2, 60))).params
        account = EnvelopeAccount(
            OWNER,
            1,
            created.variant,
            created.total_amount,
            created.total_slots,
            withdrawn_amount=500_000,
            claimed_count=1,
            expiry=2_000_000_000,
            cancelled=False,
        )
        decoded = parse_envelope(pack_envelope(account, layout_for("padded")), layout_for("padded"))
        self.assertEqual(decoded.remaining, 500_000)
        self.assertTrue(decoded.is_claimable(now=1_000_000_000))

    def test_short_envelope_is_decode_error(self) -> None:
        raw = _raw_envelope(b"\x01" + bytes(32), self.tail)
        with self.assertRaises(DecodeError):
            parse_envelope(raw[:-1], layout_for("padded"))
        with self.assertRaises(DecodeError):
            parse_envelope(b"", layout_for("compact"))

    def test_compact_direct_fixed_truncated_tail(self) -> None:
        raw = _raw_envelope(b"\x00" + bytes(CLAIMER), self.tail)
        with self.assertRaises(DecodeError):
            parse_envelope(raw[:100], layout_for("compact"))

    def test_unknown_layout(self) -> None:
        with self.assertRaises(ValidationError):
            layout_for("packed")

    def test_to_dict_reports_expiry(self) -> None:
        account = EnvelopeAccount(OWNER, 7, GroupFixed(), 1_000_000, 2, 0, 0, 1_000, False)
        payload = account.to_dict(now=2_000)
        self.assertTrue(payload["is_expired"])
        self.assertEqual(payload["envelope_type"], "GroupFixed")
        self.assertIsNone(payload["allowed_address"])
        self.assertEqual(payload["remaining_amount"], 1_000_000)

    def test_to_dict_tolerates_out_of_range_expiry(self) -> None:
        for expiry in (2**63 - 1, -(2**63)):
            raw = pack_envelope(
                EnvelopeAccount(OWNER, 7, GroupFixed(), 1_000_000, 2, 0, 0, expiry, False),
                layout_for("padded"),
            )
            account = parse_envelope(raw, layout_for("padded"))
            self.assertIsNone(account.expiry_at)
            payload = account.to_dict(now=0)
            self.assertEqual(payload["expiry"], expiry)
            self.assertIsNone(payload["expiry_time"])

    def test_to_dict_formats_expiry_in_utc(self) -> None:
        account = EnvelopeAccount(OWNER, 7, GroupFixed(), 1_000_000, 2, 0, 0, 1_700_000_000, False)
        self.assertEqual(account.to_dict()["expiry_time"], "2023-11-14T22:13:20+00:00")

    def test_discriminator_is_checked_when_given(self) -> None:
        raw = _raw_envelope(b"\x01" + bytes(32), self.tail)
        account = parse_envelope(raw, layout_for("padded"), ENVELOPE_DISC)
        self.assertEqual(account.envelope_id, 7)
        with self.assertRaisesRegex(DecodeError, "discriminator mismatch"):
            parse_envelope(raw, layout_for("padded"), discriminator("account", "ClaimRecord"))


class OtherAccountTests(unittest.TestCase):
    def test_user_state(self) -> None:
        raw = discriminator("account", "UserState") + bytes(OWNER) + struct.pack("<Q", 4)
        state = parse_user_state(raw)
        self.assertEqual(state, UserState(OWNER, 4))
        self.assertEqual(state.next_envelope_id, 5)
        self.assertEqual(pack_user_state(state), bytes(8) + raw[8:])

    def test_user_state_too_short(self) -> None:
        with self.assertRaisesRegex(DecodeError, "user state"):
            parse_user_state(bytes(47))

    def test_claim_record(self) -> None:
        record = ClaimRecord(CLAIMER, 3, 250_000, 1_700_000_123)
        raw = pack_claim_record(record)
        self.assertEqual(len(raw), 64)
        self.assertEqual(parse_claim_record(raw), record)
        with self.assertRaises(DecodeError):
            parse_claim_record(raw[:63])


if __name__ == "__main__":
    unittest.main()
