"""
Tests for jscore.registrar
"""

import secrets
import threading

import pytest
from coincurve import PrivateKey

from jscore.crypto import pubkey_hex
from jscore.errors import CertificateInvalid, CertificateReused, RegistrarError
from jscore.models import Certificate, Identity, IdentityGeneration, UTXORef
from jscore.registrar import CertificateRequester, IdentityRegistrar, InputCommitment


def _commitment(*amounts: int) -> InputCommitment:
    owner = pubkey_hex(PrivateKey())
    return InputCommitment(
        utxos=tuple(
            UTXORef(txid=secrets.token_hex(32), vout=0, amount=a, owner_pubkey=owner)
            for a in amounts
        )
    )


def _new_identity(handle: str = "S1new") -> Identity:
    return Identity(id=handle, generation=IdentityGeneration.NEW)


def test_register_and_redeem():
    registrar = IdentityRegistrar()
    certificate = registrar.register(_commitment(100_000, 50_000))

    assert certificate.amount == 150_000
    assert registrar.verify(certificate)
    assert registrar.issued_count == 1
    assert registrar.outstanding == 1

    identity = _new_identity()
    registrar.redeem(certificate, identity)
    assert identity.blinded_cert == certificate
    assert registrar.redeemed_count == 1
    assert registrar.outstanding == 0


def test_certificate_redeems_once():
    registrar = IdentityRegistrar()
    certificate = registrar.register(_commitment(100_000))
    registrar.redeem(certificate, _new_identity("S1first"))
    with pytest.raises(CertificateReused):
        registrar.redeem(certificate, _new_identity("S1second"))


def test_concurrent_redemption_has_one_winner():
    registrar = IdentityRegistrar()
    certificate = registrar.register(_commitment(100_000))
    results: list[str] = []
    barrier = threading.Barrier(8)

    def attempt(i: int) -> None:
        barrier.wait()
        try:
            registrar.redeem(certificate, _new_identity(f"S1thread{i}"))
            results.append("ok")
        except CertificateReused:
            results.append("reused")

    threads = [threading.Thread(target=attempt, args=(i,)) for i in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert results.count("ok") == 1
    assert results.count("reused") == 7


def test_old_identity_cannot_redeem():
    registrar = IdentityRegistrar()
    certificate = registrar.register(_commitment(100_000))
    with pytest.raises(CertificateInvalid):
        registrar.redeem(certificate, Identity(id="S1old", generation=IdentityGeneration.OLD))


def test_forged_certificate_rejected():
    registrar = IdentityRegistrar()
    certificate = registrar.register(_commitment(100_000))

    inflated = certificate.model_copy(update={"amount": 200_000})
    assert not registrar.verify(inflated)
    with pytest.raises(CertificateInvalid):
        registrar.redeem(inflated, _new_identity())

    other_registrar = IdentityRegistrar()
    assert not other_registrar.verify(certificate)


def test_split_issuance_bounded_by_committed_value():
    registrar = IdentityRegistrar()
    commitment = _commitment(100_000)

    registrar.open_issuance(commitment, 60_000)
    registrar.open_issuance(commitment, 40_000)
    with pytest.raises(RegistrarError):
        registrar.open_issuance(commitment, 1)


def test_cancelled_issuance_releases_committed_value():
    registrar = IdentityRegistrar()
    commitment = _commitment(100_000)
    first = registrar.open_issuance(commitment, 60_000)
    second = registrar.open_issuance(commitment, 40_000)

    assert registrar.cancel_issuance([first.nonce_id, second.nonce_id], commitment) == 2
    assert registrar.open_nonces(60_000) == 0
    with pytest.raises(RegistrarError):
        registrar.sign_blinded(first.nonce_id, 1)

    certificate = registrar.register(commitment)
    assert certificate.amount == 100_000


def test_signed_issuance_is_not_cancelled():
    registrar = IdentityRegistrar()
    commitment = _commitment(100_000)
    requester = CertificateRequester(registrar.master_pubkey, 60_000)
    nonce = registrar.open_issuance(commitment, 60_000)
    registrar.sign_blinded(nonce.nonce_id, requester.challenge(nonce))

    assert registrar.cancel_issuance([nonce.nonce_id], commitment) == 0
    with pytest.raises(RegistrarError):
        registrar.open_issuance(commitment, 50_000)


def test_open_nonces_are_limited_per_amount():
    registrar = IdentityRegistrar(max_open_nonces=2)
    commitment = _commitment(100_000)
    first = registrar.open_issuance(commitment, 10_000)
    registrar.open_issuance(commitment, 10_000)

    with pytest.raises(RegistrarError):
        registrar.open_issuance(commitment, 10_000)
    # Other amounts sign under another tweaked key
    registrar.open_issuance(commitment, 20_000)

    requester = CertificateRequester(registrar.master_pubkey, 10_000)
    registrar.sign_blinded(first.nonce_id, requester.challenge(first))
    assert registrar.open_nonces(10_000) == 1
    registrar.open_issuance(commitment, 10_000)


def test_certificate_with_oversized_amount_does_not_verify():
    registrar = IdentityRegistrar()
    certificate = registrar.register(_commitment(100_000))
    oversized = Certificate.model_construct(**{**certificate.model_dump(), "amount": 2**64})

    assert not registrar.verify(oversized)
    with pytest.raises(CertificateInvalid):
        registrar.redeem(oversized, _new_identity())


def test_wire_issuance_flow():
    registrar = IdentityRegistrar()
    commitment = _commitment(100_000)
    requester = CertificateRequester(registrar.master_pubkey, 30_000)

    nonce = registrar.open_issuance(commitment, 30_000)
    challenge = requester.challenge(nonce)
    certificate = requester.finalize(registrar.sign_blinded(nonce.nonce_id, challenge))

    assert certificate.amount == 30_000
    assert registrar.verify(certificate)

    with pytest.raises(RegistrarError):
        registrar.sign_blinded(nonce.nonce_id, challenge)
    with pytest.raises(RegistrarError):
        registrar.sign_blinded("unknown", challenge)


def test_requester_rejects_nonce_for_other_amount():
    registrar = IdentityRegistrar()
    nonce = registrar.open_issuance(_commitment(100_000), 30_000)
    with pytest.raises(RegistrarError):
        CertificateRequester(registrar.master_pubkey, 40_000).challenge(nonce)


def test_registrar_cannot_link_certificates_to_issuance():
    """Nothing the registrar handled during issuance appears in the certificate."""
    registrar = IdentityRegistrar()
    seen: list[str] = []
    certificates: list[Certificate] = []

    for amount in (10_000, 20_000, 30_000):
        requester = CertificateRequester(registrar.master_pubkey, amount)
        nonce = registrar.open_issuance(_commitment(amount), amount)
        challenge = requester.challenge(nonce)
        s = registrar.sign_blinded(nonce.nonce_id, challenge)
        seen.extend([nonce.nonce_point, format(challenge, "064x"), format(s, "064x")])
        certificates.append(requester.finalize(s))

    for certificate in certificates:
        for value in (certificate.serial, certificate.nonce_point, certificate.signature):
            assert value not in seen


def test_bad_blind_response_raises_certificate_invalid():
    registrar = IdentityRegistrar()
    requester = CertificateRequester(registrar.master_pubkey, 30_000)
    nonce = registrar.open_issuance(_commitment(100_000), 30_000)
    s = registrar.sign_blinded(nonce.nonce_id, requester.challenge(nonce))
    with pytest.raises(CertificateInvalid):
        requester.finalize(s ^ 1)
