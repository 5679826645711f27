"""ACME Client for Let's Encrypt Integration."""

import asyncio
import base64
import hashlib
import json
import logging
from typing import Dict, List, Optional

import httpx
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from .errors import AcmeServerError, AcmeTransportError
from .keys import csr_pem_to_der, generate_private_key
from .storage import CredentialStore

log = logging.getLogger(__name__)

BAD_NONCE = "urn:ietf:params:acme:error:badNonce"
PENDING_STATUSES = ("pending", "processing")


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b'=').decode()


def _parse_acme_error(response: httpx.Response) -> Dict[str, str]:
    """Extract the problem document (RFC 7807) from an error response."""
    try:
        problem = response.json()
    except ValueError:
        return {"type": "", "detail": response.text.strip()}
    if not isinstance(problem, dict):
        return {"type": "", "detail": response.text.strip()}
    return {
        "type": problem.get("type", ""),
        "detail": problem.get("detail", "") or response.text.strip()
    }


class ACMEClient:
    """
    ACME protocol client for Let's Encrypt certificate issuance.

    One instance is shared by the whole process. The account is looked up
    or registered lazily by ensure_account(), which is safe to call from
    concurrent requests.
    """

    def __init__(
        self,
        directory_url: str,
        credentials: CredentialStore,
        email: str = "",
        timeout: float = 30.0,
        poll_attempts: int = 30,
        poll_interval: float = 2.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        """
        Initialize the ACME client.

        Args:
            directory_url: ACME directory URL (staging or production)
            credentials: Store holding the account key
            email: Contact email sent on account registration
            timeout: Per-request timeout in seconds
            poll_attempts: How many times to poll a pending resource
            poll_interval: Seconds between polls
            transport: Optional httpx transport, used by tests
        """
        self.directory_url = directory_url
        self.credentials = credentials
        self.email = email
        self.timeout = timeout
        self.poll_attempts = poll_attempts
        self.poll_interval = poll_interval
        self.transport = transport

        self.directory = None
        self.nonce = None
        self.account_url = None
        self._account_key = None
        self._account_lock = asyncio.Lock()

    def _http(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self.transport)

    async def _get_directory(self) -> Dict:
        """Fetch the ACME directory."""
        if self.directory:
            return self.directory

        try:
            async with self._http() as client:
                response = await client.get(self.directory_url)
        except httpx.TransportError as e:
            raise AcmeTransportError(f"Could not reach ACME directory {self.directory_url}: {e}") from e

        if response.status_code != 200:
            raise AcmeServerError(
                f"ACME directory returned HTTP {response.status_code}",
                response_status=response.status_code
            )
        self.directory = response.json()
        return self.directory

    async def _get_nonce(self) -> str:
        """Get a fresh nonce for signing requests."""
        if self.nonce:
            nonce = self.nonce
            self.nonce = None
            return nonce

        directory = await self._get_directory()
        try:
            async with self._http() as client:
                response = await client.head(directory["newNonce"])
        except httpx.TransportError as e:
            raise AcmeTransportError(f"Could not fetch ACME nonce: {e}") from e

        if "Replay-Nonce" not in response.headers:
            raise AcmeServerError("ACME server did not return a nonce", response_status=response.status_code)
        return response.headers["Replay-Nonce"]

    def _update_nonce(self, response: httpx.Response) -> None:
        """Update nonce from response header."""
        if "Replay-Nonce" in response.headers:
            self.nonce = response.headers["Replay-Nonce"]

    def _get_jwk(self, private_key: rsa.RSAPrivateKey) -> Dict:
        """Get the JWK representation of the public key."""
        public_numbers = private_key.public_key().public_numbers()
        n_length = (public_numbers.n.bit_length() + 7) // 8
        e_length = (public_numbers.e.bit_length() + 7) // 8

        return {
            "kty": "RSA",
            "n": _b64url(public_numbers.n.to_bytes(n_length, byteorder='big')),
            "e": _b64url(public_numbers.e.to_bytes(e_length, byteorder='big'))
        }

    def _get_thumbprint(self, jwk: Dict) -> str:
        """Calculate the JWK thumbprint (RFC 7638)."""
        # Canonical JSON
        jwk_json = json.dumps(jwk, sort_keys=True, separators=(',', ':'))
        digest = hashlib.sha256(jwk_json.encode()).digest()
        return _b64url(digest)

    def _sign_request(
        self,
        url: str,
        payload: Optional[Dict],
        nonce: str,
        use_kid: bool = True
    ) -> Dict:
        """Create a signed JWS request. A payload of None makes a POST-as-GET."""
        protected = {
            "alg": "RS256",
            "nonce": nonce,
            "url": url
        }

        if use_kid and self.account_url:
            protected["kid"] = self.account_url
        else:
            protected["jwk"] = self._get_jwk(self._account_key)

        protected_b64 = _b64url(json.dumps(protected).encode())

        if payload is None:
            payload_b64 = ""
        else:
            payload_b64 = _b64url(json.dumps(payload).encode())

        signing_input = f"{protected_b64}.{payload_b64}".encode()

        signature = self._account_key.sign(
            signing_input,
            padding.PKCS1v15(),
            hashes.SHA256()
        )

        return {
            "protected": protected_b64,
            "payload": payload_b64,
            "signature": _b64url(signature)
        }

    async def _post(
        self,
        url: str,
        payload: Optional[Dict],
        use_kid: bool = True,
        accept: Optional[str] = None
    ) -> httpx.Response:
        """
        Make a signed POST request to the ACME server.

        A rejected nonce is retried once with a fresh one.
        """
        headers = {"Content-Type": "application/jose+json"}
        if accept:
            headers["Accept"] = accept

        for attempt in range(2):
            nonce = await self._get_nonce()
            body = self._sign_request(url, payload, nonce, use_kid)

            try:
                async with self._http() as client:
                    response = await client.post(url, json=body, headers=headers)
            except httpx.TransportError as e:
                raise AcmeTransportError(f"Could not reach ACME server at {url}: {e}") from e

            self._update_nonce(response)

            if response.status_code == 400 and attempt == 0:
                if _parse_acme_error(response)["type"] == BAD_NONCE:
                    log.debug("ACME server rejected nonce, retrying %s", url)
                    continue
            return response

        return response

    async def _post_as_get(self, url: str, what: str, accept: Optional[str] = None) -> httpx.Response:
        response = await self._post(url, None, accept=accept)
        if response.status_code != 200:
            self._raise_for_problem(response, f"Failed to fetch {what}")
        return response

    def _raise_for_problem(self, response: httpx.Response, message: str) -> None:
        problem = _parse_acme_error(response)
        detail = problem["detail"] or "Unknown error"
        raise AcmeServerError(
            f"{message}: {detail}",
            detail=detail,
            response_status=response.status_code
        )

    def _require_account(self) -> None:
        if self._account_key is None or not self.account_url:
            raise RuntimeError("ACME account is not initialised; call ensure_account() first")

    # ==================== Account ====================

    async def ensure_account(self) -> str:
        """
        Look up or register the ACME account for the stored key.

        Concurrent first calls are serialised; every caller receives the
        same account URL. Registering an already registered key is not an
        error: the server answers 200 with the existing account.

        Returns:
            Account URL
        """
        if self.account_url:
            return self.account_url

        async with self._account_lock:
            if self.account_url:
                return self.account_url

            key_pem = self.credentials.load_or_create_key(lambda: generate_private_key()[1])
            self._account_key = serialization.load_pem_private_key(key_pem.encode(), password=None)

            directory = await self._get_directory()

            payload = {"termsOfServiceAgreed": True}
            if self.email:
                payload["contact"] = [f"mailto:{self.email}"]

            response = await self._post(directory["newAccount"], payload, use_kid=False)

            if response.status_code not in [200, 201]:
                self._raise_for_problem(response, "Account registration failed")

            account_url = response.headers.get("Location")
            if not account_url:
                raise AcmeServerError("ACME server did not return an account URL")

            if response.status_code == 201:
                log.info("Registered new ACME account: %s", account_url)
            else:
                log.info("Using existing ACME account: %s", account_url)

            self.credentials.save_account_url(account_url)
            self.account_url = account_url
            return account_url

    # ==================== Orders ====================

    async def create_order(self, domain: str) -> Dict:
        """
        Create a new certificate order for a single domain.

        Returns:
            Order object with its URL under "url"
        """
        self._require_account()
        directory = await self._get_directory()

        payload = {"identifiers": [{"type": "dns", "value": domain}]}
        response = await self._post(directory["newOrder"], payload)

        if response.status_code not in [200, 201]:
            self._raise_for_problem(response, "Order creation failed")

        order = response.json()
        order["url"] = response.headers.get("Location")
        if not order["url"]:
            raise AcmeServerError("ACME server did not return an order URL")
        return order

    async def get_order(self, order_url: str) -> Dict:
        self._require_account()
        response = await self._post_as_get(order_url, "order")
        order = response.json()
        order["url"] = order_url
        return order

    async def get_authorizations(self, order: Dict) -> List[Dict]:
        """Fetch every authorization listed by an order."""
        self._require_account()
        authorizations = []

        for authz_url in order.get("authorizations", []):
            response = await self._post_as_get(authz_url, "authorization")
            authz = response.json()
            authz["url"] = authz_url
            authorizations.append(authz)

        return authorizations

    # ==================== Challenges ====================

    def get_challenge_key_authorization(self, challenge: Dict) -> str:
        """
        Compute the value a validator expects for a challenge.

        http-01 serves the key authorization itself; dns-01 publishes the
        base64url SHA-256 digest of it (RFC 8555 section 8.4).
        """
        self._require_account()
        thumbprint = self._get_thumbprint(self._get_jwk(self._account_key))
        key_authorization = f"{challenge['token']}.{thumbprint}"

        if challenge.get("type") == "dns-01":
            return _b64url(hashlib.sha256(key_authorization.encode()).digest())
        return key_authorization

    async def get_challenge(self, challenge_url: str) -> Dict:
        self._require_account()
        response = await self._post_as_get(challenge_url, "challenge")
        return response.json()

    async def complete_challenge(self, challenge: Dict) -> Dict:
        """Tell the ACME server the challenge is ready to be validated."""
        self._require_account()
        response = await self._post(challenge["url"], {})

        if response.status_code not in [200, 202]:
            self._raise_for_problem(response, "Challenge response rejected")
        return response.json()

    async def wait_for_valid_status(self, resource_url: str) -> Dict:
        """
        Poll a challenge, authorization or order until it leaves the pending states.

        Returns:
            The resource in its final state; callers check "status"

        Raises:
            AcmeServerError: If the resource is still pending after all attempts
        """
        self._require_account()
        status = None

        for attempt in range(self.poll_attempts):
            response = await self._post_as_get(resource_url, "resource status")
            resource = response.json()
            status = resource.get("status")

            if status not in PENDING_STATUSES:
                return resource

            log.debug("%s is %s (attempt %d/%d)", resource_url, status, attempt + 1, self.poll_attempts)
            await asyncio.sleep(self.poll_interval)

        raise AcmeServerError(f"Timed out waiting for {resource_url} (last status: {status})")

    # ==================== Finalization ====================

    async def finalize_order(self, order: Dict, csr_pem: str) -> Dict:
        """
        Submit the CSR and wait for the certificate to be issued.

        Returns:
            The order in "valid" state, including its certificate URL
        """
        self._require_account()

        response = await self._post(order["finalize"], {"csr": _b64url(csr_pem_to_der(csr_pem))})

        if response.status_code not in [200, 201]:
            self._raise_for_problem(response, "Finalization failed")

        finalized = response.json()
        finalized["url"] = order["url"]

        if finalized.get("status") in PENDING_STATUSES or not finalized.get("certificate"):
            finalized = await self.wait_for_valid_status(order["url"])
            finalized["url"] = order["url"]

        if finalized.get("status") != "valid":
            error = finalized.get("error") or {}
            raise AcmeServerError(
                f"Order became {finalized.get('status')} during processing",
                detail=error.get("detail")
            )
        return finalized

    async def get_certificate(self, order: Dict) -> str:
        """Download the issued certificate chain (PEM)."""
        self._require_account()
        cert_url = order.get("certificate")
        if not cert_url:
            raise AcmeServerError("Order has no certificate URL")

        response = await self._post_as_get(cert_url, "certificate", accept="application/pem-certificate-chain")
        return response.text
