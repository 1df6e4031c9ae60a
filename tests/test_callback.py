# SPDX-FileCopyrightText: 2020-present Dan Pascu <dan@aethereal.link>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

import hashlib
import hmac
from datetime import UTC, datetime

import pytest

from threema.callback import CallbackFields, EncryptedCallback, compute_mac, read_callback, verify_mac
from threema.crypto import EncryptedMessage
from threema.messages.datamodel import MessageID, Nonce
from threema.messages.exceptions import AuthenticationFailed, MacMismatchError, MalformedInputError

API_SECRET = 's3cr3t'


def make_form(*, api_secret: str = API_SECRET, **fields: str) -> dict[str, str]:
    form = {
        'from': 'ECHOECHO',
        'to': '*TESTGWY',
        'messageId': '0102030405060708',
        'date': '1700000000',
        'nonce': '00' * 24,
        'box': 'deadbeef',
        'nickname': 'Echo',
    } | fields
    if 'mac' not in form:
        data = ''.join(form[name] for name in ('from', 'to', 'messageId', 'date', 'nonce', 'box'))
        form['mac'] = hmac.new(api_secret.encode(), data.encode(), hashlib.sha256).hexdigest()
    return form


class TestCallbackFields:

    def test_from_form(self) -> None:
        form = make_form()
        fields = CallbackFields.from_form(form)
        assert fields.sender == 'ECHOECHO'
        assert fields.recipient == '*TESTGWY'
        assert fields.message_id == '0102030405060708'
        assert fields.date == '1700000000'
        assert fields.nonce == '00' * 24
        assert fields.box == 'deadbeef'
        assert fields.mac == form['mac']
        assert fields.nickname == 'Echo'

    def test_nickname(self) -> None:
        form = make_form()
        del form['nickname']
        assert CallbackFields.from_form(form).nickname == ''
        assert CallbackFields.from_form(make_form(nickname='N' * 40)).nickname == 'N' * 32

    def test_invalid_fields(self) -> None:
        for name in ('from', 'to', 'messageId', 'date', 'nonce', 'box', 'mac'):
            form = make_form()
            del form[name]
            with pytest.raises(MalformedInputError, match=f"The '{name}' field is missing or empty"):
                CallbackFields.from_form(form)
            with pytest.raises(MalformedInputError, match=f"The '{name}' field is missing or empty"):
                CallbackFields.from_form(make_form(**{name: ''}))

        with pytest.raises(MalformedInputError, match="The 'from' field must have 8 characters, got 7"):
            CallbackFields.from_form(make_form(**{'from': 'ECHOECH'}))
        with pytest.raises(MalformedInputError, match="The 'to' field must have 8 characters, got 9"):
            CallbackFields.from_form(make_form(to='*TESTGWYX'))
        with pytest.raises(MalformedInputError, match="The 'messageId' field must have 16 characters"):
            CallbackFields.from_form(make_form(messageId='0102'))
        with pytest.raises(MalformedInputError, match="The 'messageId' field must be hex encoded"):
            CallbackFields.from_form(make_form(messageId='zz' * 8))
        with pytest.raises(MalformedInputError, match="The 'nonce' field must have 48 characters"):
            CallbackFields.from_form(make_form(nonce='00' * 23))
        with pytest.raises(MalformedInputError, match="The 'mac' field must have 64 characters"):
            CallbackFields.from_form(make_form(mac='00' * 31))
        with pytest.raises(MalformedInputError, match="The 'mac' field must be hex encoded"):
            CallbackFields.from_form(make_form(mac='gg' * 32))


class TestCallbackMAC:

    def test_compute_mac(self) -> None:
        form = make_form()
        fields = CallbackFields.from_form(form)
        assert compute_mac(fields, API_SECRET) == bytes.fromhex(form['mac'])
        assert compute_mac(fields, API_SECRET.encode()) == bytes.fromhex(form['mac'])
        assert compute_mac(fields, 'other secret') != bytes.fromhex(form['mac'])

    def test_verify_mac(self) -> None:
        form = make_form()
        fields = CallbackFields.from_form(form)
        verify_mac(fields, bytes.fromhex(form['mac']), API_SECRET)
        with pytest.raises(MacMismatchError, match='The callback MAC does not match'):
            verify_mac(fields, bytes.fromhex(form['mac']), 'wrong secret')
        with pytest.raises(MacMismatchError):
            verify_mac(fields, bytes(32), API_SECRET)

    def test_mac_covers_fields(self) -> None:
        # changing any of the authenticated fields after the MAC was computed must fail verification
        replacements = {
            'from': 'OTHERONE',
            'to': '*OTHERGW',
            'messageId': '0102030405060709',
            'date': '1700000001',
            'nonce': '00' * 23 + '01',
            'box': 'deadbeee',
        }
        for name, value in replacements.items():
            form = make_form()
            form[name] = value
            with pytest.raises(AuthenticationFailed):
                read_callback(form, API_SECRET)

        # the nickname is not covered by the MAC
        form = make_form()
        form['nickname'] = 'Mallory'
        assert read_callback(form, API_SECRET).nickname == 'Mallory'


class TestReadCallback:

    def test_read_callback(self) -> None:
        callback = read_callback(make_form(), API_SECRET)
        assert isinstance(callback, EncryptedCallback)
        assert callback.sender == 'ECHOECHO'
        assert callback.recipient == '*TESTGWY'
        assert callback.message_id == MessageID(bytes([1, 2, 3, 4, 5, 6, 7, 8]))
        assert callback.date == datetime(2023, 11, 14, 22, 13, 20, tzinfo=UTC)
        assert callback.nonce == Nonce(bytes(24))
        assert callback.box == b'\xde\xad\xbe\xef'
        assert callback.nickname == 'Echo'
        assert callback.encrypted_message == EncryptedMessage(nonce=Nonce(bytes(24)), box=b'\xde\xad\xbe\xef')

    def test_flipped_box(self) -> None:
        form = make_form()
        form['box'] = 'deadbeee'
        with pytest.raises(AuthenticationFailed):
            read_callback(form, API_SECRET)

    def test_mac_is_verified_before_decoding(self) -> None:
        # a malformed date with a wrong MAC is reported as a MAC mismatch
        form = make_form()
        form['date'] = 'yesterday'
        with pytest.raises(MacMismatchError):
            read_callback(form, API_SECRET)

        # with a correct MAC, the date is decoded and rejected
        with pytest.raises(MalformedInputError, match='The callback date is not a UNIX timestamp'):
            read_callback(make_form(date='yesterday'), API_SECRET)
        with pytest.raises(MalformedInputError, match='The callback date is out of range'):
            read_callback(make_form(date=str(10**20)), API_SECRET)

    def test_box_limits(self) -> None:
        callback = read_callback(make_form(box='00' * 4000), API_SECRET)
        assert len(callback.box) == 4000
        with pytest.raises(MalformedInputError, match=r'The callback box is too big \(4001 > 4000 bytes\)'):
            read_callback(make_form(box='00' * 4001), API_SECRET)
        with pytest.raises(MalformedInputError, match='The callback box is not hex encoded'):
            read_callback(make_form(box='abc'), API_SECRET)

    def test_strict_encodings(self) -> None:
        # only ASCII decimal dates and plain hex boxes are accepted, even with a valid MAC
        for date in (' 1700000000', '1700000000 ', '1_700_000_000', '+1700000000', '١٧٠٠٠٠٠٠٠٠', '-', '0x10'):
            with pytest.raises(MalformedInputError, match='The callback date is not a UNIX timestamp'):
                read_callback(make_form(date=date), API_SECRET)
        for box in ('de ad be ef', ' deadbeef', 'deadbeef\n', 'deadbeeg'):
            with pytest.raises(MalformedInputError, match='The callback box is not hex encoded'):
                read_callback(make_form(box=box), API_SECRET)

        assert read_callback(make_form(date='-1'), API_SECRET).date == datetime(1969, 12, 31, 23, 59, 59, tzinfo=UTC)
        assert read_callback(make_form(box='DEADBEEF'), API_SECRET).box == b'\xde\xad\xbe\xef'
