#!/usr/bin/env python
#
# ACME certificate fetcher.
#
# Copyright (C) 2026  certfetcher contributors
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU General Public License for more details.
#
# You should have received a copy of the GNU General Public License
# along with this program.  If not, see <http://www.gnu.org/licenses/>.
#
"""ACME certificate fetcher.

Keeps a host process supplied with a TLS certificate: resolves or
registers an ACME account, configures domain validation challenge
providers and submits a caller supplied CSR.
"""
import abc
import collections
import contextlib
import datetime
import doctest
import errno
import hashlib
import json
import logging
import os
import re
import shutil
import socket
import socketserver
import subprocess
import tempfile
import threading
import time
import unittest

from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric import rsa

import dns.exception
import dns.flags
import dns.message
import dns.name
import dns.query
import dns.rcode
import dns.rdataclass
import dns.rdatatype
import dns.rrset
import dns.tsig
import dns.tsigkeyring
import dns.update
import josepy as jose
import mock
import requests
from OpenSSL import SSL
from OpenSSL import crypto

from acme import client as acme_client
from acme import challenges
from acme import errors as acme_errors
from acme import jws as acme_jws
from acme import messages
from acme import standalone


# pylint: disable=too-many-lines


logger = logging.getLogger(__name__)  # pylint: disable=invalid-name

VERSION = '0.1.0'
URL = 'https://github.com/certfetcher/certfetcher'

LE_PRODUCTION_URI = 'https://acme-v02.api.letsencrypt.org/directory'
DEFAULT_USER_AGENT = 'certfetcher/' + VERSION
DEFAULT_PROPAGATION_SECONDS = 60

ACME_TLS_1_PROTOCOL = b'acme-tls/1'
# id-pe-acmeIdentifier, RFC 8737
ACME_IDENTIFIER_OID = x509.ObjectIdentifier('1.3.6.1.5.5.7.1.31')


class Error(Exception):
    """certfetcher error."""


class ConfigurationError(Error):
    """Challenge provider setup failed."""


class ClientConstructionError(Error):
    """CA client could not be built."""


class RegistrationError(Error):
    """CA rejected or could not complete account registration."""


class EmptyResultError(Error):
    """CA issuance call returned no resource."""


class EmptyCertificateError(EmptyResultError):
    """CA issuance call returned a resource without certificate bytes."""


class ParseError(Error):
    """Certificate bytes could not be parsed."""


_PEM_RE_LABELCHAR = r'[\x21-\x2c\x2e-\x7e]'
_PEM_RE = re.compile(
    (r"""
^-----BEGIN\ ((?:%s(?:[- ]?%s)*)?)\s*-----$
.*?
^-----END\ \1-----\s*""" % (_PEM_RE_LABELCHAR, _PEM_RE_LABELCHAR)).encode(),
    re.DOTALL | re.MULTILINE | re.VERBOSE)


def split_pems(buf):
    r"""Split buffer comprised of PEM encoded (RFC 7468).

    >>> x = b'\n-----BEGIN FOO BAR-----\nfoo\nbar\n-----END FOO BAR-----'
    >>> len(list(split_pems(x * 3)))
    3
    >>> list(split_pems(b''))
    []
    """
    if isinstance(buf, str):
        buf = buf.encode()
    for match in _PEM_RE.finditer(buf):
        yield match.group(0)


def parse_certificates(data):
    """Parse PEM encoded certificates.

    >>> parse_certificates(b'')
    Traceback (most recent call last):
    ...
    certfetcher.ParseError: No PEM encoded certificates were found.

    Args:
      data: Bytes (or text) holding one or more PEM blocks.

    Returns:
      List of `cryptography.x509.Certificate`, in the order the PEM
      blocks appear (leaf first for a full chain).
    """
    pems = list(split_pems(data))
    if not pems:
        raise ParseError('No PEM encoded certificates were found.')
    certs = []
    for pem in pems:
        try:
            certs.append(x509.load_pem_x509_certificate(pem))
        except ValueError as error:
            raise ParseError(
                'Could not parse certificate: {0}'.format(error))
    return certs


def csr_pem(csr):
    """Return the PEM encoding of a CSR.

    >>> csr_pem(b'-----BEGIN CERTIFICATE REQUEST-----')
    b'-----BEGIN CERTIFICATE REQUEST-----'
    """
    if isinstance(csr, bytes):
        return csr
    if isinstance(csr, str):
        return csr.encode()
    return csr.public_bytes(serialization.Encoding.PEM)


def check_port(port):
    """Validate a TCP port number.

    >>> check_port(5002)
    5002
    >>> check_port('80')
    80
    >>> check_port(70000)
    Traceback (most recent call last):
    ...
    certfetcher.ConfigurationError: Invalid port number: 70000
    """
    try:
        number = int(port)
    except (TypeError, ValueError):
        number = None
    if number is None or not 0 < number < 2 ** 16:
        raise ConfigurationError('Invalid port number: {0}'.format(port))
    return number


def split_host_port(value, default_port):
    """Split ``host[:port]``, IPv6 hosts in brackets.

    >>> split_host_port('127.0.0.1', 53)
    ('127.0.0.1', 53)
    >>> split_host_port('127.0.0.1:5353', 53)
    ('127.0.0.1', 5353)
    >>> split_host_port('[::1]:5353', 53)
    ('::1', 5353)
    >>> split_host_port('::1', 53)
    ('::1', 53)
    """
    port = ''
    if value.startswith('['):
        host, _, rest = value[1:].partition(']')
        if rest.startswith(':'):
            port = rest[1:]
    elif value.count(':') == 1:
        host, port = value.split(':')
    else:
        host = value
    return host, (check_port(port) if port else default_port)


class Identity(collections.namedtuple('Identity', 'email key')):
    """ACME account identity: contact email and account private key.

    The key is a `cryptography` RSA or EC private key supplied by the
    caller; it is never generated or persisted here.
    """

    _EC_ALGS = {
        'secp256r1': jose.ES256,
        'secp384r1': jose.ES384,
        'secp521r1': jose.ES512,
    }

    def jwk(self):
        """Account key as JWK."""
        if isinstance(self.key, rsa.RSAPrivateKey):
            return jose.JWKRSA(key=self.key)
        if isinstance(self.key, ec.EllipticCurvePrivateKey):
            return jose.JWKEC(key=self.key)
        raise ConfigurationError(
            'Unsupported account key type: {0}'.format(type(self.key)))

    def alg(self):
        """JWS signature algorithm matching the account key."""
        if isinstance(self.key, rsa.RSAPrivateKey):
            return jose.RS256
        if (isinstance(self.key, ec.EllipticCurvePrivateKey)
                and self.key.curve.name in self._EC_ALGS):
            return self._EC_ALGS[self.key.curve.name]
        raise ConfigurationError(
            'Unsupported account key type: {0}'.format(type(self.key)))


EMPTY_REGISTRATION = messages.RegistrationResource(
    body=messages.Registration())
"""Placeholder registration: do not register with this CA."""


def is_placeholder(regr):
    """Is `regr` the "do not register" placeholder?

    >>> is_placeholder(EMPTY_REGISTRATION)
    True
    >>> is_placeholder(messages.RegistrationResource(
    ...     uri='https://ca.example/acct/1', body=messages.Registration()))
    False
    """
    return regr == EMPTY_REGISTRATION


ChallengeBinding = collections.namedtuple(
    'ChallengeBinding', 'typ source value')


class ChallengeConfig(collections.namedtuple(
        'ChallengeConfig', 'http_port http_webroot tls_port dns_provider')):
    """Which domain validation challenges to configure.

    All fields are optional and any subset may be set.
    """

    def __new__(cls, http_port=0, http_webroot='', tls_port=0,
                dns_provider=''):
        return super(ChallengeConfig, cls).__new__(
            cls, http_port, http_webroot, tls_port, dns_provider)

    def bindings(self):
        """Provider bindings, in the order they are applied.

        Both HTTP-01 sources replace the same provider on the client,
        so when port and web root are both set the web root wins:

        >>> [(b.typ, b.source) for b in ChallengeConfig(
        ...     http_port=5002, http_webroot='/srv/www').bindings()]
        [('http-01', 'port'), ('http-01', 'webroot')]
        >>> ChallengeConfig().bindings()
        []
        >>> [(b.typ, b.source) for b in ChallengeConfig(
        ...     tls_port=5001, dns_provider='exec').bindings()]
        [('tls-alpn-01', 'port'), ('dns-01', 'provider')]
        """
        table = [
            (challenges.HTTP01.typ, 'port', self.http_port),
            (challenges.HTTP01.typ, 'webroot', self.http_webroot),
            (challenges.TLSALPN01.typ, 'port', self.tls_port),
            (challenges.DNS01.typ, 'provider', self.dns_provider),
        ]
        return [ChallengeBinding(typ, source, value)
                for typ, source, value in table if value]

    def check(self):
        """Warn about settings that override each other."""
        if self.http_port and self.http_webroot:
            logger.warning('Both an http-01 port (%s) and web root (%s) were '
                           'configured; only one http-01 provider can be '
                           'used, last writer wins: the web root is used.',
                           self.http_port, self.http_webroot)


class ChallengeProvider(metaclass=abc.ABCMeta):
    """Domain validation challenge provider.

    Providers are bound to a CA client, which calls `present` for
    every challenge it chose the provider for, then `wait` once, then
    `cleanup` for every presented challenge, whatever the outcome.
    """

    typ = NotImplemented
    """ACME challenge type solved by the provider."""

    @abc.abstractmethod
    def present(self, domain, challb, account_key):
        """Make the challenge response available to the CA."""
        raise NotImplementedError()

    @abc.abstractmethod
    def cleanup(self, domain, challb, account_key):
        """Withdraw the challenge response."""
        raise NotImplementedError()

    def wait(self):
        """Wait until presented responses are visible to the CA."""


class HTTP01ServerProvider(ChallengeProvider):
    """Serve http-01 validations from a built-in HTTP server.

    The server is bound on the first `present` and shut down once the
    last challenge was cleaned up. When not running with privileges to
    bind port 80, challenge traffic has to be proxied to `port`.
    """

    typ = challenges.HTTP01.typ

    def __init__(self, host, port):
        self.address = (host, check_port(port))
        self.resources = set()
        self.servers = None

    def present(self, domain, challb, account_key):
        response, validation = challb.response_and_validation(account_key)
        # bind before recording, a failed bind must not leave a resource
        # behind that keeps the next server alive
        if self.servers is None:
            self.servers = standalone.HTTP01DualNetworkedServers(
                self.address, self.resources)
            self.servers.serve_forever()
            logger.debug('Serving http-01 validations on %s',
                         self.servers.getsocknames())
        self.resources.add(standalone.HTTP01RequestHandler.HTTP01Resource(
            chall=challb.chall, response=response, validation=validation))

    def cleanup(self, domain, challb, account_key):
        # the running server holds on to the same set
        for resource in [resource for resource in self.resources
                         if resource.chall == challb.chall]:
            self.resources.discard(resource)
        if not self.resources and self.servers is not None:
            self.servers.shutdown_and_server_close()
            self.servers = None


def save_validation(root, challb, validation):
    """Save validation to webroot.

    Args:
      root: Webroot path.
      challb: `acme.messages.ChallengeBody` with `http-01` challenge.
      validation: `http-01` validation
    """
    try:
        os.makedirs(os.path.join(root, challb.URI_ROOT_PATH))
    except OSError as error:
        if error.errno != errno.EEXIST:
            # directory doesn't already exist and we cannot create it
            raise
    path = os.path.join(root, challb.path[1:])
    with open(path, 'w') as validation_file:
        logger.debug('Saving validation (%r) at %s', validation, path)
        validation_file.write(validation)


def remove_validation(root, challb):
    """Remove validation from webroot.

    Args:
      root: Webroot path.
      challb: `acme.messages.ChallengeBody` with `http-01` challenge.
    """
    path = os.path.join(root, challb.path[1:])
    try:
        logger.debug('Removing validation file at %s', path)
        os.remove(path)
    except OSError as error:
        logger.error('Could not remove validation '
                     'file at %s : %s', path, error)


class WebrootHTTP01Provider(ChallengeProvider):
    """Serve http-01 validations as files below a web root."""

    typ = challenges.HTTP01.typ

    def __init__(self, root):
        if not os.path.isdir(root):
            raise ConfigurationError(
                'Web root {0} does not exist or is not a '
                'directory'.format(root))
        self.root = root

    def present(self, domain, challb, account_key):
        save_validation(self.root, challb, challb.validation(account_key))

    def cleanup(self, domain, challb, account_key):
        remove_validation(self.root, challb)


def gen_tls_alpn01_cert(domain, key_authorization, key=None):
    """Generate a self-signed tls-alpn-01 challenge certificate.

    >>> key, cert = gen_tls_alpn01_cert('example.com', 'token.thumbprint')
    >>> cert.extensions.get_extension_for_oid(ACME_IDENTIFIER_OID).critical
    True

    Args:
      domain: Domain being validated.
      key_authorization: Key authorization of the challenge.
      key: Certificate private key, a fresh P-256 key if not given.

    Returns:
      ``(key, cert)`` tuple of `cryptography` objects.
    """
    if key is None:
        key = ec.generate_private_key(ec.SECP256R1())
    digest = hashlib.sha256(key_authorization.encode()).digest()
    now = datetime.datetime.now(datetime.timezone.utc)
    cert = x509.CertificateBuilder().subject_name(
        x509.Name([])
    ).issuer_name(
        x509.Name([])
    ).public_key(
        key.public_key()
    ).serial_number(
        x509.random_serial_number()
    ).not_valid_before(
        now - datetime.timedelta(days=1)
    ).not_valid_after(
        now + datetime.timedelta(days=7)
    ).add_extension(
        x509.SubjectAlternativeName([x509.DNSName(domain)]), critical=False,
    ).add_extension(
        # DER OCTET STRING holding the SHA-256 digest
        x509.UnrecognizedExtension(ACME_IDENTIFIER_OID, b'\x04\x20' + digest),
        critical=True,
    ).sign(key, hashes.SHA256())
    return key, cert


def select_acme_tls_1(connection, alpn_protos):
    """ALPN selection callback agreeing on ``acme-tls/1`` only.

    >>> select_acme_tls_1(None, [b'acme-tls/1'])
    b'acme-tls/1'
    >>> select_acme_tls_1(None, [b'h2', b'http/1.1'])
    b''
    """
    # pylint: disable=unused-argument
    if len(alpn_protos) == 1 and alpn_protos[0] == ACME_TLS_1_PROTOCOL:
        logger.debug('Agreed on %s ALPN', ACME_TLS_1_PROTOCOL)
        return ACME_TLS_1_PROTOCOL
    logger.debug('Cannot agree on ALPN proto. Got: %s', alpn_protos)
    # an empty protocol terminates the handshake
    return b''


class TLSALPN01RequestHandler(socketserver.BaseRequestHandler):
    """Complete a tls-alpn-01 validation handshake."""

    def handle(self):
        context = SSL.Context(SSL.TLS_SERVER_METHOD)
        context.set_tlsext_servername_callback(self._select_context)
        context.set_alpn_select_callback(select_acme_tls_1)
        connection = SSL.Connection(context, self.request)
        connection.set_accept_state()
        try:
            connection.do_handshake()
        except SSL.Error as error:
            logger.debug('tls-alpn-01 handshake with %s failed: %s',
                         self.client_address[0], error)
            return
        connection.shutdown()

    def _select_context(self, connection):
        server_name = connection.get_servername()
        if server_name is None:
            return
        server_name = server_name.decode()
        logger.debug('Serving challenge cert for server name %s', server_name)
        if server_name in self.server.challenge_certs:
            connection.set_context(self.server.context_for(server_name))


class TLSALPN01Server(socketserver.ThreadingMixIn, socketserver.TCPServer):
    """TLS server answering tls-alpn-01 validation handshakes."""

    allow_reuse_address = True
    daemon_threads = True

    def __init__(self, server_address, challenge_certs):
        self.challenge_certs = challenge_certs
        socketserver.TCPServer.__init__(
            self, server_address, TLSALPN01RequestHandler)

    def context_for(self, server_name):
        """TLS context presenting the challenge cert for `server_name`."""
        key, cert = self.challenge_certs[server_name]
        context = SSL.Context(SSL.TLS_SERVER_METHOD)
        context.use_privatekey(crypto.PKey.from_cryptography_key(key))
        context.use_certificate(crypto.X509.from_cryptography(cert))
        context.set_alpn_select_callback(select_acme_tls_1)
        return context


class TLSALPN01ServerProvider(ChallengeProvider):
    """Serve tls-alpn-01 challenge certificates from a built-in server."""

    typ = challenges.TLSALPN01.typ

    def __init__(self, host, port):
        self.address = (host, check_port(port))
        self.certs = {}
        self.server = None
        self.thread = None

    def present(self, domain, challb, account_key):
        cert = gen_tls_alpn01_cert(
            domain, challb.key_authorization(account_key))
        if self.server is None:
            self.server = TLSALPN01Server(self.address, self.certs)
            self.thread = threading.Thread(target=self.server.serve_forever)
            self.thread.daemon = True
            self.thread.start()
            logger.debug('Serving tls-alpn-01 validations on %s',
                         self.server.socket.getsockname())
        self.certs[domain] = cert

    def cleanup(self, domain, challb, account_key):
        self.certs.pop(domain, None)
        if not self.certs and self.server is not None:
            self.server.shutdown()
            self.server.server_close()
            self.thread.join()
            self.server = self.thread = None


def _environ_int(environ, name, default):
    value = environ.get(name)
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        raise ConfigurationError(
            '{0} must be an integer, got {1!r}'.format(name, value))


class DNSProvider(ChallengeProvider):
    """DNS-01 provider.

    Subclasses publish and withdraw the ``_acme-challenge`` TXT record
    (`_perform`, `_cleanup`) and are built from environment variables
    (`from_environ`). `wait` sleeps once for `propagation_seconds` after
    records were published.
    """

    typ = challenges.DNS01.typ

    def __init__(self, propagation_seconds=DEFAULT_PROPAGATION_SECONDS):
        self.propagation_seconds = propagation_seconds
        self._pending = False

    @classmethod
    def from_environ(cls, environ):
        """Build provider from environment configuration."""
        raise NotImplementedError()

    def present(self, domain, challb, account_key):
        validation_name = challb.validation_domain_name(domain)
        logger.debug('Publishing TXT record %s', validation_name)
        self._perform(domain, validation_name, challb.validation(account_key))
        self._pending = True

    def cleanup(self, domain, challb, account_key):
        validation_name = challb.validation_domain_name(domain)
        logger.debug('Removing TXT record %s', validation_name)
        self._cleanup(domain, validation_name, challb.validation(account_key))

    def wait(self):
        if self._pending:
            logger.info('Waiting %d seconds for DNS changes to propagate',
                        self.propagation_seconds)
            time.sleep(self.propagation_seconds)
            self._pending = False

    @abc.abstractmethod
    def _perform(self, domain, validation_name, validation):
        raise NotImplementedError()

    @abc.abstractmethod
    def _cleanup(self, domain, validation_name, validation):
        raise NotImplementedError()

    # Provider registration magic
    registered = {}

    @classmethod
    def register(cls, name):
        """Register DNS provider under `name`."""
        def reg(provider_cls):
            """Register provider class."""
            assert name not in cls.registered
            cls.registered[name] = provider_cls
            return provider_cls
        return reg


def dns_provider(name, environ=None):
    """Look up a DNS-01 provider by name and build it.

    >>> dns_provider('nonexistent', environ={})
    Traceback (most recent call last):
    ...
    certfetcher.ConfigurationError: Unrecognized DNS provider: nonexistent
    """
    try:
        provider_cls = DNSProvider.registered[name]
    except KeyError:
        raise ConfigurationError('Unrecognized DNS provider: {0}'.format(name))
    if environ is None:
        environ = os.environ
    return provider_cls.from_environ(environ)


@DNSProvider.register(name='exec')
class ExecDNSProvider(DNSProvider):
    """Delegate TXT record changes to an external program.

    The program is called as ``program present|cleanup FQDN VALUE``.

    Environment: ``EXEC_PATH`` (required), ``EXEC_PROPAGATION_SECONDS``.
    """

    def __init__(self, program,
                 propagation_seconds=DEFAULT_PROPAGATION_SECONDS):
        super(ExecDNSProvider, self).__init__(propagation_seconds)
        self.program = program

    @classmethod
    def from_environ(cls, environ):
        program = environ.get('EXEC_PATH')
        if not program:
            raise ConfigurationError(
                'EXEC_PATH must be set for the exec DNS provider')
        return cls(program, _environ_int(
            environ, 'EXEC_PROPAGATION_SECONDS', DEFAULT_PROPAGATION_SECONDS))

    def _run(self, action, validation_name, validation):
        cmd = [self.program, action, validation_name + '.', validation]
        logger.debug('Running %s', ' '.join(cmd))
        try:
            subprocess.check_call(cmd)
        except (OSError, subprocess.CalledProcessError) as error:
            raise Error('DNS provider program {0} failed ({1} {2}): {3}'
                        .format(self.program, action, validation_name, error))

    def _perform(self, domain, validation_name, validation):
        self._run('present', validation_name, validation)

    def _cleanup(self, domain, validation_name, validation):
        self._run('cleanup', validation_name, validation)


def base_domain_name_guesses(domain):
    """Zone name candidates for `domain`, most specific first.

    >>> base_domain_name_guesses('_acme-challenge.example.com')
    ['_acme-challenge.example.com', 'example.com', 'com']
    """
    fragments = domain.split('.')
    return ['.'.join(fragments[i:]) for i in range(len(fragments))]


@DNSProvider.register(name='rfc2136')
class RFC2136DNSProvider(DNSProvider):
    """Publish TXT records with RFC 2136 dynamic updates.

    Environment: ``RFC2136_NAMESERVER`` (``ip[:port]``, required),
    ``RFC2136_TSIG_KEY`` and ``RFC2136_TSIG_SECRET`` (together),
    ``RFC2136_TSIG_ALGORITHM``, ``RFC2136_TTL``, ``RFC2136_ZONE``,
    ``RFC2136_PROPAGATION_SECONDS``.
    """

    ALGORITHMS = {
        'hmac-md5': dns.tsig.HMAC_MD5,
        'hmac-sha1': dns.tsig.HMAC_SHA1,
        'hmac-sha224': dns.tsig.HMAC_SHA224,
        'hmac-sha256': dns.tsig.HMAC_SHA256,
        'hmac-sha384': dns.tsig.HMAC_SHA384,
        'hmac-sha512': dns.tsig.HMAC_SHA512,
    }
    PORT = 53
    TTL = 120
    TIMEOUT = 45

    def __init__(self, server, port=PORT, key_name=None, key_secret=None,
                 algorithm='hmac-sha256', ttl=TTL, zone=None,
                 propagation_seconds=DEFAULT_PROPAGATION_SECONDS):
        # pylint: disable=too-many-arguments
        super(RFC2136DNSProvider, self).__init__(propagation_seconds)
        try:
            self.algorithm = self.ALGORITHMS[algorithm.lower()]
        except KeyError:
            raise ConfigurationError(
                'Unknown TSIG algorithm: {0}'.format(algorithm))
        self.keyring = None
        if key_name:
            self.keyring = dns.tsigkeyring.from_text({key_name: key_secret})
        self.server = server
        self.port = port
        self.ttl = ttl
        self.zone = zone

    @classmethod
    def from_environ(cls, environ):
        nameserver = environ.get('RFC2136_NAMESERVER')
        if not nameserver:
            raise ConfigurationError(
                'RFC2136_NAMESERVER must be set for the rfc2136 DNS provider')
        server, port = split_host_port(nameserver, cls.PORT)
        key_name = environ.get('RFC2136_TSIG_KEY')
        key_secret = environ.get('RFC2136_TSIG_SECRET')
        if bool(key_name) != bool(key_secret):
            raise ConfigurationError(
                'RFC2136_TSIG_KEY and RFC2136_TSIG_SECRET '
                'must be set together')
        return cls(
            server, port, key_name, key_secret,
            algorithm=environ.get('RFC2136_TSIG_ALGORITHM') or 'hmac-sha256',
            ttl=_environ_int(environ, 'RFC2136_TTL', cls.TTL),
            zone=environ.get('RFC2136_ZONE') or None,
            propagation_seconds=_environ_int(
                environ, 'RFC2136_PROPAGATION_SECONDS',
                DEFAULT_PROPAGATION_SECONDS),
        )

    def _perform(self, domain, validation_name, validation):
        update = self._update_message(validation_name)
        update.add(self._relative_name(update, validation_name), self.ttl,
                   dns.rdatatype.TXT, validation)
        self._send(update, 'adding TXT record {0}'.format(validation_name))

    def _cleanup(self, domain, validation_name, validation):
        update = self._update_message(validation_name)
        update.delete(self._relative_name(update, validation_name),
                      dns.rdatatype.TXT, validation)
        self._send(update, 'deleting TXT record {0}'.format(validation_name))

    def _update_message(self, record_name):
        zone = self.zone or self._find_zone(record_name)
        return dns.update.Update(
            zone, keyring=self.keyring, keyalgorithm=self.algorithm)

    @staticmethod
    def _relative_name(update, record_name):
        return dns.name.from_text(record_name).relativize(update.origin)

    def _query(self, message):
        return dns.query.tcp(message, self.server, self.TIMEOUT, self.port)

    def _send(self, update, action):
        try:
            response = self._query(update)
        except (OSError, dns.exception.DNSException) as error:
            raise Error('Encountered error {0}: {1}'.format(action, error))
        rcode = response.rcode()
        if rcode != dns.rcode.NOERROR:
            raise Error('Received response from server while {0}: {1}'.format(
                action, dns.rcode.to_text(rcode)))
        logger.debug('Succeeded %s', action)

    def _find_zone(self, record_name):
        """Closest name with an authoritative SOA record."""
        guesses = base_domain_name_guesses(record_name)
        for guess in guesses:
            domain = dns.name.from_text(guess)
            request = dns.message.make_query(
                domain, dns.rdatatype.SOA, dns.rdataclass.IN)
            # no recursion, authoritative answers only
            request.flags ^= dns.flags.RD
            try:
                response = self._query(request)
            except (OSError, dns.exception.DNSException) as error:
                raise Error('Encountered error when making query: {0}'.format(
                    error))
            if (response.rcode() == dns.rcode.NOERROR
                    and response.get_rrset(response.answer, domain,
                                           dns.rdataclass.IN,
                                           dns.rdatatype.SOA)
                    and response.flags & dns.flags.AA):
                logger.debug('Received authoritative SOA response for %s',
                             guess)
                return guess
        raise Error('Unable to determine base domain for {0} using names: '
                    '{1}.'.format(record_name, guesses))


CertificateResource = collections.namedtuple(
    'CertificateResource',
    'domain cert_url certificate issuer_certificate csr')
"""Issued certificate.

`certificate` holds the PEM full chain when bundled, the leaf only
otherwise, or `None` when the CA returned no certificate.
"""


def certificate_resource(orderr, bundle=True):
    """Build `CertificateResource` from a finalized order."""
    pems = list(split_pems(orderr.fullchain_pem or b''))
    identifiers = orderr.body.identifiers or ()
    return CertificateResource(
        domain=identifiers[0].value if identifiers else None,
        cert_url=orderr.body.certificate,
        certificate=b''.join(pems if bundle else pems[:1]) or None,
        issuer_certificate=b''.join(pems[1:]) or None,
        csr=orderr.csr_pem,
    )


def finalize_order(client, order):
    """Finalize the specified order and return the order resource."""
    try:
        finalized_order = client.poll_and_finalize(order)
    except acme_errors.PollError as error:
        if error.timeout:
            logger.error(
                'Timed out while waiting for CA to verify '
                'challenge(s) for the following authorizations: %s',
                ', '.join(authzr.uri for _, authzr in error.exhausted)
            )
        raise Error('Challenge validation has failed, see error log.')
    except acme_errors.TimeoutError:
        logger.error('Timed out while waiting for CA to verify challenge(s) '
                     'or to issue the certificate.')
        raise Error('Challenge validation has failed, see error log.')
    except acme_errors.ValidationError as error:
        logger.error("CA marked some of the authorizations as invalid, "
                     "which likely means it could not reach the configured "
                     "challenge responder. Are all your domains accessible "
                     "from the internet, and is challenge traffic proxied "
                     "to the configured ports? Failing authorizations: %s",
                     ', '.join(authzr.uri for authzr in error.failed_authzrs))
        raise Error('Challenge validation has failed, see error log.')

    return finalized_order


class ACMEClient:
    """CA client: an ACME v2 client and the providers it solves with.

    Args:
      config: `FetcherConfig`; `server`, `identity` and `user_agent`
        are used.
    """

    def __init__(self, config):
        self.identity = config.identity
        self.providers = {}
        try:
            self.net = acme_client.ClientNetwork(
                key=config.identity.jwk(),
                alg=config.identity.alg(),
                user_agent=config.user_agent,
            )
            directory = messages.Directory.from_json(
                self.net.get(config.server).json())
        except (acme_errors.Error, jose.Error,
                requests.exceptions.RequestException, ValueError) as error:
            raise ClientConstructionError(
                'Obtaining ACME client: {0}'.format(error))
        self.acme = acme_client.ClientV2(directory, net=self.net)

    def _set_provider(self, typ, provider):
        logger.debug('Using %s for %s challenges',
                     provider.__class__.__name__, typ)
        self.providers[typ] = provider

    def set_http01_provider(self, provider):
        """Replace the http-01 provider."""
        self._set_provider(challenges.HTTP01.typ, provider)

    def set_tlsalpn01_provider(self, provider):
        """Replace the tls-alpn-01 provider."""
        self._set_provider(challenges.TLSALPN01.typ, provider)

    def set_dns01_provider(self, provider):
        """Replace the dns-01 provider."""
        self._set_provider(challenges.DNS01.typ, provider)

    def resolve_account_by_key(self):
        """Find the existing account of the account key.

        Leaves the client unfit for registration on failure; use a
        fresh client to register.
        """
        return self.acme.query_registration(
            messages.RegistrationResource(body=messages.Registration()))

    def register(self, terms_of_service_agreed):
        """Register a new account."""
        return self._new_account(
            self._new_registration(terms_of_service_agreed))

    def register_with_external_account_binding(
            self, terms_of_service_agreed, kid, hmac_encoded):
        """Register a new account bound to an external account."""
        eab = messages.ExternalAccountBinding.from_data(
            account_public_key=self.net.key.public_key(),
            kid=kid,
            hmac_key=hmac_encoded,
            directory=self.acme.directory,
        )
        return self._new_account(self._new_registration(
            terms_of_service_agreed, external_account_binding=eab))

    def _new_registration(self, terms_of_service_agreed, **kwargs):
        if not self.identity.email:
            logger.warning('No email was provided; ACME CA will have no '
                           'way of contacting you.')
        new_reg = messages.NewRegistration.from_data(
            email=self.identity.email or None, **kwargs)
        if terms_of_service_agreed:
            terms_of_service = self.acme.directory.meta.terms_of_service
            if terms_of_service:
                logger.info("Agreeing to the CA's terms of service: %s",
                            terms_of_service)
            new_reg = new_reg.update(terms_of_service_agreed=True)
        return new_reg

    def _new_account(self, new_reg):
        try:
            return self.acme.new_account(new_reg)
        except acme_errors.ConflictError as error:
            logger.debug('Client already registered: %s', error.location)
            existing_reg = messages.RegistrationResource(
                uri=error.location, body=messages.Registration())
            return self.acme.query_registration(existing_reg)

    def _select_challenge(self, authzr):
        for challb in authzr.body.challenges:
            provider = self.providers.get(getattr(challb.chall, 'typ', None))
            if provider is not None:
                return provider, challb
        raise Error('CA did not offer a challenge this client is configured '
                    'to solve for {0}; offered: {1}, configured: {2}.'.format(
                        authzr.body.identifier.value,
                        ', '.join(str(getattr(challb.chall, 'typ', '?'))
                                  for challb in authzr.body.challenges),
                        ', '.join(sorted(self.providers)) or 'none'))

    def obtain_for_csr(self, csr, bundle=True):
        """Order, validate and download a certificate for `csr`.

        Args:
          csr: PEM encoded CSR.
          bundle: Return the full chain rather than the leaf only.

        Returns:
          `CertificateResource`.
        """
        order = self.acme.new_order(csr)
        selected = []
        for authzr in order.authorizations:
            if authzr.body.status == messages.STATUS_VALID:
                continue
            provider, challb = self._select_challenge(authzr)
            selected.append((authzr.body.identifier.value, provider, challb))

        account_key = self.net.key
        presented = []
        try:
            for domain, provider, challb in selected:
                logger.debug('Presenting %s challenge for %s',
                             provider.typ, domain)
                provider.present(domain, challb, account_key)
                presented.append((domain, provider, challb))
            waited = []
            for _, provider, _ in presented:
                if provider not in waited:
                    provider.wait()
                    waited.append(provider)
            for _, _, challb in presented:
                self.acme.answer_challenge(
                    challb, challb.response(account_key))
            order = finalize_order(self.acme, order)
        finally:
            for domain, provider, challb in presented:
                provider.cleanup(domain, challb, account_key)

        logger.info('Certificate issued: %s', order.body.certificate)
        return certificate_resource(order, bundle)


_PROVIDER_FACTORIES = {
    (challenges.HTTP01.typ, 'port'): (
        'HTTP01', 'set_http01_provider',
        lambda port: HTTP01ServerProvider('', port)),
    (challenges.HTTP01.typ, 'webroot'): (
        'HTTP01', 'set_http01_provider', WebrootHTTP01Provider),
    (challenges.TLSALPN01.typ, 'port'): (
        'TLSALPN01', 'set_tlsalpn01_provider',
        lambda port: TLSALPN01ServerProvider('', port)),
    (challenges.DNS01.typ, 'provider'): (
        'DNS01', 'set_dns01_provider', dns_provider),
}


def configure_challenges(client, challenge_config):
    """Attach challenge providers to a CA client.

    All providers are built before any is attached, so a failure
    leaves `client` untouched.

    Args:
      client: CA client (`ACMEClient` or work-alike).
      challenge_config: `ChallengeConfig`.

    Returns:
      `client`, mutated in place.
    """
    providers = []
    for binding in challenge_config.bindings():
        label, setter, factory = _PROVIDER_FACTORIES[
            binding.typ, binding.source]
        try:
            provider = factory(binding.value)
        except Error as error:
            raise ConfigurationError('Getting {0} challenge provider: {1}'
                                     .format(label, error))
        providers.append((label, setter, provider))

    for label, setter, provider in providers:
        try:
            getattr(client, setter)(provider)
        except Error as error:
            raise ConfigurationError('Setting up {0} challenge provider: {1}'
                                     .format(label, error))
    return client


FetcherConfig = collections.namedtuple(
    'FetcherConfig',
    'server identity eab_kid eab_hmac challenges should_register user_agent')
"""Immutable fetcher configuration, reusable across sessions."""


class Session:  # pylint: disable=too-few-public-methods
    """CA client bound to a resolved account registration."""

    def __init__(self, client, registration):
        self.client = client
        self.registration = registration


def new_client(config, client_cls=ACMEClient):
    """Build a CA client with challenge providers attached."""
    try:
        return configure_challenges(client_cls(config), config.challenges)
    except Error as error:
        raise error.__class__('Setting up ACME challenges: {0}'.format(error))


def _register(client, config):
    # TODO: gate terms_of_service_agreed behind consent captured at setup
    # time instead of agreeing unconditionally.
    if not config.eab_kid and not config.eab_hmac:
        return client.register(terms_of_service_agreed=True)
    return client.register_with_external_account_binding(
        terms_of_service_agreed=True,
        kid=config.eab_kid,
        hmac_encoded=config.eab_hmac,
    )


# CA, transport and malformed response failures of account calls
_ACCOUNT_ERRORS = (acme_errors.Error, jose.Error, KeyError, ValueError,
                   requests.exceptions.RequestException)


def resolve_account(config, client_cls=ACMEClient):
    """Bind a CA client to an account registration.

    Skips registration when `config.should_register` is false, adopts
    the account already registered for the key if there is one, and
    registers a new account otherwise.

    Returns:
      `Session`.
    """
    config.challenges.check()
    client = new_client(config, client_cls)

    if not config.should_register:
        logger.info('Not registering an account with %s', config.server)
        return Session(client, EMPTY_REGISTRATION)

    try:
        regr = client.resolve_account_by_key()
    except _ACCOUNT_ERRORS as error:
        logger.info('No existing account found for the account key (%s), '
                    'registering a new one', error)
    else:
        logger.info('Using existing account %s', regr.uri)
        return Session(client, regr)

    # the lookup leaves the client in a state unsafe for registration
    client = new_client(config, client_cls)
    try:
        regr = _register(client, config)
    except _ACCOUNT_ERRORS as error:
        raise RegistrationError(
            'ACME CA client registration: {0}'.format(error))
    logger.info('Registered account %s', regr.uri)
    return Session(client, regr)


class CertFetcher:
    """Fetches certificates for one CSR with one bound CA session.

    A fetcher is not safe for concurrent `fetch_new_cert` calls; use
    one fetcher per concurrent caller.
    """

    def __init__(self, config, session, csr):
        self.config = config
        self.session = session
        self.csr = csr

    @property
    def server(self):
        """CA directory URL."""
        return self.config.server

    @property
    def identity(self):
        """Account `Identity`."""
        return self.config.identity

    @property
    def registration(self):
        """Account registration (possibly `EMPTY_REGISTRATION`)."""
        return self.session.registration

    def fetch_new_cert(self):
        """Fetch a new certificate chain, see `fetch_certificate`."""
        return fetch_certificate(self)


def new(email, eab_kid, eab_hmac, csr, private_key, server,
        http_challenge_port=0, http_challenge_webroot='',
        tls_challenge_port=0, dns_provider_name='', should_register=True,
        user_agent=DEFAULT_USER_AGENT, client_cls=ACMEClient):
    """Set up a `CertFetcher`.

    Args:
      email: Account contact email.
      eab_kid: External account binding key id, or empty.
      eab_hmac: External account binding base64url HMAC key, or empty.
      csr: CSR, `cryptography` object or PEM bytes.
      private_key: Account private key (`cryptography`).
      server: CA directory URL.
      http_challenge_port: Port for the built-in http-01 server, or 0.
      http_challenge_webroot: Web root for http-01 files, or empty.
      tls_challenge_port: Port for the built-in tls-alpn-01 server, or 0.
      dns_provider_name: Name of the DNS-01 provider, or empty.
      should_register: Whether to resolve or register an account.

    Returns:
      `CertFetcher` bound to a resolved account.
    """
    # pylint: disable=too-many-arguments
    config = FetcherConfig(
        server=server,
        identity=Identity(email=email, key=private_key),
        eab_kid=eab_kid or '',
        eab_hmac=eab_hmac or '',
        challenges=ChallengeConfig(
            http_port=http_challenge_port,
            http_webroot=http_challenge_webroot,
            tls_port=tls_challenge_port,
            dns_provider=dns_provider_name,
        ),
        should_register=should_register,
        user_agent=user_agent,
    )
    session = resolve_account(config, client_cls)
    return CertFetcher(config, session, csr_pem(csr))


def fetch_certificate(fetcher):
    """Submit the fetcher's CSR and return the issued chain.

    Every call orders a new certificate; errors leave the fetcher
    usable for another attempt.

    Returns:
      List of `cryptography.x509.Certificate`, leaf first.
    """
    resource = fetcher.session.client.obtain_for_csr(fetcher.csr, bundle=True)
    if resource is None:
        raise EmptyResultError('No resource returned.')
    if resource.certificate is None:
        raise EmptyCertificateError('No certificates were returned.')
    return parse_certificates(resource.certificate)


class UnitTestCase(unittest.TestCase):
    """certfetcher unit test case."""

    class AssertRaisesContext:
        """Context for assert_raises."""
        # pylint: disable=too-few-public-methods

        def __init__(self):
            self.error = None

    @contextlib.contextmanager
    def assert_raises(self, exc):
        """Assert raises context manager."""
        context = self.AssertRaisesContext()
        try:
            yield context
        except exc as error:
            context.error = error
        else:
            self.fail('Expected exception (%s) not raised' % exc)

    def assert_raises_regexp(self, exc, regexp, func, *args, **kwargs):
        """Assert raises that tests exception message against regexp."""
        with self.assert_raises(exc) as context:
            func(*args, **kwargs)
        msg = str(context.error)
        self.assertTrue(re.match(regexp, msg) is not None,
                        "Exception message (%s) doesn't match "
                        "regexp (%s)" % (msg, regexp))

    @staticmethod
    def check_logs(level, pattern, func):
        """Check whether func logs a message matching pattern.

        ``pattern`` is a regular expression to match the logs against.
        ``func`` is the function to call.
        ``level`` is the logging level to set during the function call.

        Returns True if there is a match, False otherwise.
        """
        log_msgs = []

        class TestHandler(logging.Handler):
            """Log handler that saves logs in ``log_msgs``."""

            def emit(self, record):
                log_msgs.append(record.msg % record.args)

        handler = TestHandler(level=level)
        old_level = logger.level
        logger.addHandler(handler)
        logger.setLevel(level)

        try:
            func()
            for msg in log_msgs:
                if re.match(pattern, msg) is not None:
                    return True
            return False
        finally:
            logger.removeHandler(handler)
            logger.setLevel(old_level)


def gen_key():
    """Generate a P-256 private key."""
    return ec.generate_private_key(ec.SECP256R1())


def gen_ss_cert(domain, key=None):
    """Generate a self-signed certificate PEM for `domain`."""
    _, cert = gen_tls_alpn01_cert(domain, domain, key=key)
    return cert.public_bytes(serialization.Encoding.PEM)


def free_port():
    """Local TCP port nothing listens on."""
    with contextlib.closing(socket.socket()) as sock:
        sock.bind(('127.0.0.1', 0))
        return sock.getsockname()[1]


def tls_alpn01_handshake(port, server_name):
    """Handshake like a validating CA, return peer cert and ALPN."""
    context = SSL.Context(SSL.TLS_CLIENT_METHOD)
    context.set_alpn_protos([ACME_TLS_1_PROTOCOL])
    sock = socket.create_connection(('127.0.0.1', port), timeout=5)
    sock.setblocking(True)
    with contextlib.closing(sock):
        connection = SSL.Connection(context, sock)
        connection.set_tlsext_host_name(server_name)
        connection.set_connect_state()
        connection.do_handshake()
        return (connection.get_peer_certificate().to_cryptography(),
                connection.get_alpn_proto_negotiated())


def ca_directory():
    """CA directory for tests."""
    return messages.Directory.from_json({
        'newAccount': 'https://ca.example/acme/new-account',
        'newNonce': 'https://ca.example/acme/new-nonce',
        'newOrder': 'https://ca.example/acme/new-order',
        'meta': {'termsOfService': 'https://ca.example/tos'},
    })


class FakeClient:
    """CA client test double recording every call."""

    def __init__(self, factory):
        self.factory = factory
        self.calls = []

    def set_http01_provider(self, provider):
        self.calls.append(('set_http01_provider', provider))

    def set_tlsalpn01_provider(self, provider):
        self.calls.append(('set_tlsalpn01_provider', provider))

    def set_dns01_provider(self, provider):
        self.calls.append(('set_dns01_provider', provider))

    def resolve_account_by_key(self):
        self.calls.append(('resolve_account_by_key',))
        if self.factory.resolve_error is not None:
            raise self.factory.resolve_error
        return self.factory.resolved

    def register(self, terms_of_service_agreed):
        self.calls.append(('register', terms_of_service_agreed))
        if self.factory.register_error is not None:
            raise self.factory.register_error
        return self.factory.registered

    def register_with_external_account_binding(
            self, terms_of_service_agreed, kid, hmac_encoded):
        self.calls.append(('register_with_external_account_binding',
                           terms_of_service_agreed, kid, hmac_encoded))
        if self.factory.register_error is not None:
            raise self.factory.register_error
        return self.factory.registered

    def obtain_for_csr(self, csr, bundle=True):
        self.calls.append(('obtain_for_csr', csr, bundle))
        return self.factory.resource


class FakeClientFactory:
    """Builds `FakeClient` instances and keeps track of them."""
    # pylint: disable=too-few-public-methods,too-many-instance-attributes

    def __init__(self, **kwargs):
        self.resolved = messages.RegistrationResource(
            uri='https://ca.example/acct/existing',
            body=messages.Registration())
        self.registered = messages.RegistrationResource(
            uri='https://ca.example/acct/new', body=messages.Registration())
        self.resolve_error = None
        self.register_error = None
        self.construct_error = None
        self.resource = None
        self.configs = []
        self.clients = []
        for name, value in kwargs.items():
            setattr(self, name, value)

    def __call__(self, config):
        self.configs.append(config)
        if self.construct_error is not None:
            raise self.construct_error
        client = FakeClient(self)
        self.clients.append(client)
        return client

    def calls(self, name):
        """All calls to `name`, across clients."""
        return [call for client in self.clients for call in client.calls
                if call[0] == name]


REGISTER_CALLS = ('register', 'register_with_external_account_binding')


def fetcher_config(**kwargs):
    """`FetcherConfig` for tests."""
    defaults = dict(
        server='https://ca.example/directory',
        identity=Identity(email='a@example.com', key=gen_key()),
        eab_kid='',
        eab_hmac='',
        challenges=ChallengeConfig(),
        should_register=True,
        user_agent=DEFAULT_USER_AGENT,
    )
    defaults.update(kwargs)
    return FetcherConfig(**defaults)


class ConfigureChallengesTest(UnitTestCase):
    """Tests for configure_challenges."""
    # this is a test suite | pylint: disable=missing-docstring

    def setUp(self):  # pylint: disable=invalid-name
        self.root = tempfile.mkdtemp()

    def tearDown(self):  # pylint: disable=invalid-name
        shutil.rmtree(self.root)

    def test_no_options_binds_nothing(self):
        client = mock.Mock()
        self.assertTrue(
            configure_challenges(client, ChallengeConfig()) is client)
        self.assertEqual([], client.method_calls)

    def test_http_port(self):
        client = mock.Mock()
        configure_challenges(client, ChallengeConfig(http_port=5002))
        provider = client.set_http01_provider.call_args[0][0]
        self.assertTrue(isinstance(provider, HTTP01ServerProvider))
        self.assertEqual(('', 5002), provider.address)

    def test_webroot_wins_over_port(self):
        client = mock.Mock()
        configure_challenges(client, ChallengeConfig(
            http_port=5002, http_webroot=self.root))
        self.assertEqual(2, client.set_http01_provider.call_count)
        provider = client.set_http01_provider.call_args[0][0]
        self.assertTrue(isinstance(provider, WebrootHTTP01Provider))

    def test_all_types(self):
        client = mock.Mock()
        with mock.patch.dict(os.environ, {'EXEC_PATH': '/bin/true'}):
            configure_challenges(client, ChallengeConfig(
                http_webroot=self.root, tls_port=5001, dns_provider='exec'))
        self.assertTrue(isinstance(
            client.set_tlsalpn01_provider.call_args[0][0],
            TLSALPN01ServerProvider))
        self.assertTrue(isinstance(client.set_dns01_provider.call_args[0][0],
                                   ExecDNSProvider))

    def test_unknown_dns_provider_binds_nothing(self):
        client = mock.Mock()
        self.assert_raises_regexp(
            ConfigurationError, 'Getting DNS01 challenge provider: '
            'Unrecognized DNS provider: nonexistent',
            configure_challenges, client, ChallengeConfig(
                http_port=5002, tls_port=5001, dns_provider='nonexistent'))
        self.assertEqual([], client.method_calls)

    def test_missing_webroot(self):
        self.assert_raises_regexp(
            ConfigurationError, 'Getting HTTP01 challenge provider: .*',
            configure_challenges, mock.Mock(), ChallengeConfig(
                http_webroot=os.path.join(self.root, 'missing')))

    def test_bad_port(self):
        self.assert_raises_regexp(
            ConfigurationError, 'Getting TLSALPN01 challenge provider: .*',
            configure_challenges, mock.Mock(), ChallengeConfig(tls_port=70000))

    def test_binding_failure(self):
        client = mock.Mock()
        client.set_http01_provider.side_effect = Error('nope')
        self.assert_raises_regexp(
            ConfigurationError, 'Setting up HTTP01 challenge provider: nope',
            configure_challenges, client, ChallengeConfig(http_port=5002))


class WebrootHTTP01ProviderTest(UnitTestCase):
    """Tests for WebrootHTTP01Provider."""
    # this is a test suite | pylint: disable=missing-docstring

    def setUp(self):  # pylint: disable=invalid-name
        self.root = tempfile.mkdtemp()
        self.provider = WebrootHTTP01Provider(self.root)
        self.account_key = jose.JWKEC(key=gen_key())
        self.chall = challenges.HTTP01(token=b'\x01' * 16)

    def tearDown(self):  # pylint: disable=invalid-name
        shutil.rmtree(self.root)

    def test_present_and_cleanup(self):
        path = os.path.join(self.root, self.chall.path[1:])
        self.provider.present('example.com', self.chall, self.account_key)
        with open(path) as validation_file:
            self.assertEqual(self.chall.validation(self.account_key),
                             validation_file.read())
        self.provider.cleanup('example.com', self.chall, self.account_key)
        self.assertFalse(os.path.exists(path))


class TLSALPN01ServerProviderTest(UnitTestCase):
    """Tests for TLSALPN01ServerProvider."""
    # this is a test suite | pylint: disable=missing-docstring

    def test_certs_follow_challenges(self):
        provider = TLSALPN01ServerProvider('', 5001)
        account_key = jose.JWKEC(key=gen_key())
        chall = challenges.TLSALPN01(token=b'\x02' * 16)
        with mock.patch(__name__ + '.TLSALPN01Server') as server_cls:
            with mock.patch('threading.Thread'):
                provider.present('example.com', chall, account_key)
                server_cls.assert_called_once_with(('', 5001), provider.certs)
                _, cert = provider.certs['example.com']
                digest = hashlib.sha256(
                    chall.key_authorization(account_key).encode()).digest()
                self.assertEqual(
                    b'\x04\x20' + digest,
                    cert.extensions.get_extension_for_oid(
                        ACME_IDENTIFIER_OID).value.value)
                provider.cleanup('example.com', chall, account_key)
        self.assertEqual({}, provider.certs)
        self.assertTrue(provider.server is None)

    def test_failed_bind_leaves_no_cert(self):
        provider = TLSALPN01ServerProvider('', 5001)
        account_key = jose.JWKEC(key=gen_key())
        chall = challenges.TLSALPN01(token=b'\x02' * 16)
        with mock.patch(__name__ + '.TLSALPN01Server') as server_cls:
            server_cls.side_effect = OSError(
                errno.EADDRINUSE, 'Address already in use')
            with self.assert_raises(OSError):
                provider.present('example.com', chall, account_key)
        self.assertEqual({}, provider.certs)
        self.assertTrue(provider.server is None)

    def test_handshake(self):
        port = free_port()
        provider = TLSALPN01ServerProvider('127.0.0.1', port)
        account_key = jose.JWKEC(key=gen_key())
        chall = challenges.TLSALPN01(token=b'\x05' * 16)
        provider.present('example.com', chall, account_key)
        try:
            _, expected = provider.certs['example.com']
            cert, protocol = tls_alpn01_handshake(port, b'example.com')
        finally:
            provider.cleanup('example.com', chall, account_key)
        self.assertEqual(expected.fingerprint(hashes.SHA256()),
                         cert.fingerprint(hashes.SHA256()))
        self.assertEqual(ACME_TLS_1_PROTOCOL, protocol)
        self.assertTrue(provider.server is None)


class HTTP01ServerProviderTest(UnitTestCase):
    """Tests for HTTP01ServerProvider."""
    # this is a test suite | pylint: disable=missing-docstring

    def setUp(self):  # pylint: disable=invalid-name
        self.account_key = jose.JWKEC(key=gen_key())
        self.challb = messages.ChallengeBody(
            chall=challenges.HTTP01(token=b'\x04' * 16),
            uri='https://ca.example/chall/1')

    def test_serves_validation(self):
        port = free_port()
        provider = HTTP01ServerProvider('127.0.0.1', port)
        session = requests.Session()
        session.trust_env = False
        provider.present('example.com', self.challb, self.account_key)
        try:
            response = session.get('http://127.0.0.1:{0}{1}'.format(
                port, self.challb.path), timeout=5)
        finally:
            provider.cleanup('example.com', self.challb, self.account_key)
        self.assertEqual(200, response.status_code)
        self.assertEqual(self.challb.validation(self.account_key),
                         response.text)
        self.assertTrue(provider.servers is None)

    def test_failed_bind_leaves_no_resource(self):
        provider = HTTP01ServerProvider('', 5002)
        with mock.patch('acme.standalone.HTTP01DualNetworkedServers') as cls:
            cls.side_effect = OSError(errno.EADDRINUSE,
                                      'Address already in use')
            with self.assert_raises(OSError):
                provider.present('example.com', self.challb, self.account_key)
            self.assertEqual(set(), provider.resources)
            self.assertTrue(provider.servers is None)

            cls.side_effect = None
            provider.present('example.com', self.challb, self.account_key)
            provider.cleanup('example.com', self.challb, self.account_key)
        self.assertEqual(set(), provider.resources)
        cls.return_value.shutdown_and_server_close.assert_called_once_with()
        self.assertTrue(provider.servers is None)


class DNSProviderTest(UnitTestCase):
    """Tests for the DNS-01 providers."""
    # this is a test suite | pylint: disable=missing-docstring

    def setUp(self):  # pylint: disable=invalid-name
        self.account_key = jose.JWKEC(key=gen_key())
        self.chall = challenges.DNS01(token=b'\x03' * 16)

    def test_exec_requires_path(self):
        self.assert_raises_regexp(ConfigurationError, 'EXEC_PATH must be set',
                                  dns_provider, 'exec', environ={})

    def test_exec_runs_program(self):
        provider = dns_provider('exec', environ={
            'EXEC_PATH': '/usr/local/bin/dns-hook',
            'EXEC_PROPAGATION_SECONDS': '5'})
        with mock.patch('subprocess.check_call') as check_call:
            provider.present('example.com', self.chall, self.account_key)
            provider.cleanup('example.com', self.chall, self.account_key)
        validation = self.chall.validation(self.account_key)
        self.assertEqual([
            mock.call(['/usr/local/bin/dns-hook', 'present',
                       '_acme-challenge.example.com.', validation]),
            mock.call(['/usr/local/bin/dns-hook', 'cleanup',
                       '_acme-challenge.example.com.', validation]),
        ], check_call.call_args_list)

    def test_exec_failure(self):
        provider = ExecDNSProvider('/usr/local/bin/dns-hook')
        with mock.patch('subprocess.check_call') as check_call:
            check_call.side_effect = subprocess.CalledProcessError(1, 'hook')
            self.assert_raises_regexp(
                Error, 'DNS provider program .* failed', provider.present,
                'example.com', self.chall, self.account_key)

    def test_wait_sleeps_once(self):
        provider = ExecDNSProvider('hook', propagation_seconds=7)
        with mock.patch('subprocess.check_call'):
            provider.present('example.com', self.chall, self.account_key)
            provider.present('www.example.com', self.chall, self.account_key)
        with mock.patch('time.sleep') as sleep:
            provider.wait()
            provider.wait()
        sleep.assert_called_once_with(7)

    def test_bad_propagation_seconds(self):
        self.assert_raises_regexp(
            ConfigurationError, 'EXEC_PROPAGATION_SECONDS must be an integer',
            dns_provider, 'exec', environ={
                'EXEC_PATH': 'hook', 'EXEC_PROPAGATION_SECONDS': 'soon'})

    def test_rfc2136_from_environ(self):
        provider = dns_provider('rfc2136', environ={
            'RFC2136_NAMESERVER': '192.0.2.1:5353',
            'RFC2136_TSIG_KEY': 'example-key',
            'RFC2136_TSIG_SECRET': 'c2VjcmV0',
            'RFC2136_TTL': '300',
        })
        self.assertEqual(('192.0.2.1', 5353, 300),
                         (provider.server, provider.port, provider.ttl))
        self.assertTrue(provider.keyring is not None)

    def test_rfc2136_tsig_pair(self):
        self.assert_raises_regexp(
            ConfigurationError, '.*must be set together', dns_provider,
            'rfc2136', environ={'RFC2136_NAMESERVER': '192.0.2.1',
                                'RFC2136_TSIG_KEY': 'example-key'})

    def test_rfc2136_unknown_algorithm(self):
        self.assert_raises_regexp(
            ConfigurationError, 'Unknown TSIG algorithm', RFC2136DNSProvider,
            '192.0.2.1', algorithm='rot13')

    def test_rfc2136_updates(self):
        provider = RFC2136DNSProvider('192.0.2.1', zone='example.com.')
        response = mock.Mock()
        response.rcode.return_value = dns.rcode.NOERROR
        with mock.patch('dns.query.tcp', return_value=response) as tcp:
            provider.present('example.com', self.chall, self.account_key)
            provider.cleanup('example.com', self.chall, self.account_key)
        self.assertEqual(2, tcp.call_count)
        self.assertEqual(('192.0.2.1', RFC2136DNSProvider.TIMEOUT, 53),
                         tcp.call_args[0][1:])

    @staticmethod
    def _soa_answer(zone):
        zone = dns.name.from_text(zone)

        def answer(request, *unused_args):
            name = request.question[0].name
            response = dns.message.make_response(request)
            if name == zone:
                response.flags |= dns.flags.AA
                response.answer.append(dns.rrset.from_text(
                    name, 3600, 'IN', 'SOA', 'ns1.example.com. '
                    'hostmaster.example.com. 1 7200 900 1209600 86400'))
            else:
                response.set_rcode(dns.rcode.NXDOMAIN)
            return dns.message.from_wire(response.to_wire())
        return answer

    def test_rfc2136_finds_zone(self):
        # pylint: disable=protected-access
        provider = RFC2136DNSProvider('192.0.2.1')
        with mock.patch('dns.query.tcp') as tcp:
            tcp.side_effect = self._soa_answer('example.com')
            self.assertEqual('example.com', provider._find_zone(
                '_acme-challenge.www.example.com'))
        self.assertEqual(3, tcp.call_count)
        for call in tcp.call_args_list:
            self.assertFalse(call[0][0].flags & dns.flags.RD)

    def test_rfc2136_no_zone(self):
        # pylint: disable=protected-access
        provider = RFC2136DNSProvider('192.0.2.1')
        with mock.patch('dns.query.tcp') as tcp:
            tcp.side_effect = self._soa_answer('example.org')
            self.assert_raises_regexp(
                Error, 'Unable to determine base domain',
                provider._find_zone, '_acme-challenge.example.com')

    def test_rfc2136_refused(self):
        provider = RFC2136DNSProvider('192.0.2.1', zone='example.com.')
        response = mock.Mock()
        response.rcode.return_value = dns.rcode.REFUSED
        with mock.patch('dns.query.tcp', return_value=response):
            self.assert_raises_regexp(
                Error, '.*REFUSED', provider.present, 'example.com',
                self.chall, self.account_key)


class ResolveAccountTest(UnitTestCase):
    """Tests for resolve_account."""
    # this is a test suite | pylint: disable=missing-docstring

    def test_skip_registration(self):
        factory = FakeClientFactory()
        session = resolve_account(
            fetcher_config(should_register=False), factory)
        self.assertTrue(is_placeholder(session.registration))
        self.assertEqual(1, len(factory.clients))
        self.assertEqual([], factory.calls('resolve_account_by_key'))
        for name in REGISTER_CALLS:
            self.assertEqual([], factory.calls(name))

    def test_adopt_existing(self):
        factory = FakeClientFactory()
        session = resolve_account(fetcher_config(), factory)
        self.assertTrue(session.registration is factory.resolved)
        self.assertTrue(session.client is factory.clients[0])
        self.assertEqual(1, len(factory.clients))
        for name in REGISTER_CALLS:
            self.assertEqual([], factory.calls(name))

    def test_register_with_fresh_client(self):
        factory = FakeClientFactory(
            resolve_error=messages.Error.with_code('accountDoesNotExist'))
        session = resolve_account(fetcher_config(), factory)
        self.assertTrue(session.registration is factory.registered)
        self.assertEqual(2, len(factory.clients))
        self.assertTrue(session.client is factory.clients[1])
        self.assertEqual([('resolve_account_by_key',)],
                         factory.clients[0].calls)
        self.assertEqual([('register', True)], factory.calls('register'))
        self.assertEqual(
            [], factory.calls('register_with_external_account_binding'))

    def test_register_after_transport_error(self):
        factory = FakeClientFactory(
            resolve_error=requests.exceptions.ConnectionError('reset'))
        session = resolve_account(fetcher_config(), factory)
        self.assertTrue(session.registration is factory.registered)

    def test_register_with_eab(self):
        for kid, hmac in (('kid-1', 'aG1hYw'), ('kid-1', ''), ('', 'aG1hYw')):
            factory = FakeClientFactory(
                resolve_error=acme_errors.Error('no account'))
            resolve_account(
                fetcher_config(eab_kid=kid, eab_hmac=hmac), factory)
            self.assertEqual(
                [('register_with_external_account_binding', True, kid, hmac)],
                factory.calls('register_with_external_account_binding'))
            self.assertEqual([], factory.calls('register'))

    def test_registration_failure(self):
        factory = FakeClientFactory(
            resolve_error=acme_errors.Error('no account'),
            register_error=messages.Error.with_code('unauthorized'))
        self.assert_raises_regexp(
            RegistrationError, 'ACME CA client registration: .*',
            resolve_account, fetcher_config(), factory)

    def test_register_after_malformed_lookup(self):
        for error in (jose.DeserializationError('garbled account'),
                      KeyError('Location')):
            factory = FakeClientFactory(resolve_error=error)
            session = resolve_account(fetcher_config(), factory)
            self.assertTrue(session.registration is factory.registered)
            self.assertEqual(2, len(factory.clients))

    def test_malformed_registration_is_wrapped(self):
        factory = FakeClientFactory(
            resolve_error=acme_errors.Error('no account'),
            register_error=jose.DeserializationError('garbled'))
        self.assert_raises_regexp(
            RegistrationError, 'ACME CA client registration: .*garbled',
            resolve_account, fetcher_config(), factory)

    def test_conflict_warning_logged_once(self):
        root = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, root)
        factory = FakeClientFactory(
            resolve_error=acme_errors.Error('no account'))
        config = fetcher_config(challenges=ChallengeConfig(
            http_port=5002, http_webroot=root))
        with mock.patch.object(logger, 'warning') as warning:
            resolve_account(config, factory)
        self.assertEqual(2, len(factory.clients))
        self.assertEqual(1, warning.call_count)
        self.assertTrue('last writer wins' in warning.call_args[0][0])

    def test_construction_failure(self):
        factory = FakeClientFactory(construct_error=ClientConstructionError(
            'Obtaining ACME client: unreachable'))
        self.assert_raises_regexp(
            ClientConstructionError,
            'Setting up ACME challenges: Obtaining ACME client: unreachable',
            resolve_account, fetcher_config(), factory)

    def test_configuration_failure(self):
        factory = FakeClientFactory()
        self.assert_raises_regexp(
            ConfigurationError, 'Setting up ACME challenges: Getting DNS01 .*',
            resolve_account, fetcher_config(
                challenges=ChallengeConfig(dns_provider='nonexistent')),
            factory)
        self.assertEqual([], factory.calls('resolve_account_by_key'))


class FetchCertificateTest(UnitTestCase):
    """Tests for new and fetch_certificate."""
    # this is a test suite | pylint: disable=missing-docstring

    def _fetcher(self, resource):
        self.factory = FakeClientFactory(resource=resource)
        return new('a@example.com', '', '', b'csr', gen_key(),
                   'https://ca.example/directory', should_register=False,
                   client_cls=self.factory)

    def test_new_skip_registration(self):
        fetcher = self._fetcher(None)
        self.assertTrue(is_placeholder(fetcher.registration))
        self.assertEqual('a@example.com', fetcher.identity.email)
        self.assertEqual('https://ca.example/directory', fetcher.server)
        for name in REGISTER_CALLS:
            self.assertEqual([], self.factory.calls(name))

    def test_no_resource(self):
        fetcher = self._fetcher(None)
        self.assert_raises_regexp(EmptyResultError, 'No resource returned',
                                  fetcher.fetch_new_cert)
        self.assertEqual([('obtain_for_csr', b'csr', True)],
                         self.factory.calls('obtain_for_csr'))

    def test_no_certificate_bytes(self):
        fetcher = self._fetcher(CertificateResource(
            domain='example.com', cert_url=None, certificate=None,
            issuer_certificate=None, csr=b'csr'))
        with mock.patch(__name__ + '.parse_certificates') as parse:
            with self.assert_raises(EmptyResultError) as context:
                fetch_certificate(fetcher)
        self.assertTrue(isinstance(context.error, EmptyCertificateError))
        self.assertFalse(parse.called)

    def test_chain_order(self):
        pems = [gen_ss_cert(name) for name in ('leaf', 'int1', 'int2')]
        fetcher = self._fetcher(CertificateResource(
            domain='leaf', cert_url='https://ca.example/cert/1',
            certificate=b''.join(pems), issuer_certificate=b''.join(pems[1:]),
            csr=b'csr'))
        certs = fetch_certificate(fetcher)
        self.assertEqual(
            [x509.load_pem_x509_certificate(pem).serial_number
             for pem in pems],
            [cert.serial_number for cert in certs])
        # the handle is reusable
        self.assertEqual(3, len(fetcher.fetch_new_cert()))
        self.assertEqual(2, len(self.factory.calls('obtain_for_csr')))

    def test_parse_error_passes_through(self):
        fetcher = self._fetcher(CertificateResource(
            domain='leaf', cert_url=None, csr=b'csr', issuer_certificate=None,
            certificate=b'-----BEGIN CERTIFICATE-----\nZm9v\n'
                        b'-----END CERTIFICATE-----\n'))
        self.assert_raises_regexp(ParseError, 'Could not parse certificate',
                                  fetch_certificate, fetcher)


class ACMEClientTest(UnitTestCase):
    """Tests for ACMEClient."""
    # this is a test suite | pylint: disable=missing-docstring

    def setUp(self):  # pylint: disable=invalid-name
        self.client = ACMEClient.__new__(ACMEClient)
        self.client.identity = Identity(email='a@example.com', key=gen_key())
        self.client.providers = {}
        self.client.net = mock.Mock(key=self.client.identity.jwk())
        self.client.acme = mock.Mock()
        self.client.acme.directory.meta.terms_of_service = (
            'https://ca.example/tos')

    @staticmethod
    def _authzr(domain, *types):
        authzr = mock.Mock()
        authzr.body.status = messages.STATUS_PENDING
        authzr.body.identifier.value = domain
        authzr.body.challenges = []
        for typ in types:
            challb = mock.Mock()
            challb.chall.typ = typ
            authzr.body.challenges.append(challb)
        return authzr

    def _order(self, *authzrs):
        order = mock.Mock(authorizations=list(authzrs))
        pems = [gen_ss_cert('leaf'), gen_ss_cert('int')]
        finalized = mock.Mock(fullchain_pem=b''.join(pems).decode(),
                              csr_pem=b'csr')
        finalized.body.certificate = 'https://ca.example/cert/1'
        finalized.body.identifiers = [mock.Mock(value='example.com')]
        self.client.acme.new_order.return_value = order
        self.client.acme.poll_and_finalize.return_value = finalized
        return pems

    def test_construction_failure(self):
        with mock.patch('acme.client.ClientNetwork') as net_cls:
            net_cls.return_value.get.side_effect = (
                requests.exceptions.ConnectionError('refused'))
            self.assert_raises_regexp(
                ClientConstructionError, 'Obtaining ACME client: refused',
                ACMEClient, fetcher_config())

    def test_register_agrees_to_terms(self):
        self.assertTrue(self.check_logs(
            logging.INFO, ".*terms of service: https://ca.example/tos",
            lambda: self.client.register(terms_of_service_agreed=True)))
        new_reg = self.client.acme.new_account.call_args[0][0]
        self.assertTrue(new_reg.terms_of_service_agreed)
        self.assertEqual(('a@example.com',), new_reg.emails)

    def test_register_conflict_adopts_account(self):
        self.client.acme.new_account.side_effect = acme_errors.ConflictError(
            'https://ca.example/acct/1')
        self.client.register(terms_of_service_agreed=True)
        regr = self.client.acme.query_registration.call_args[0][0]
        self.assertEqual('https://ca.example/acct/1', regr.uri)

    def test_resolve_account_by_key_only_returns_existing(self):
        directory = ca_directory()
        self.client.acme = acme_client.ClientV2(directory, net=self.client.net)
        self.client.net.post.return_value = mock.Mock(
            headers={'Location': 'https://ca.example/acct/7'},
            **{'json.return_value': {'status': 'valid'}})
        regr = self.client.resolve_account_by_key()
        url, body = self.client.net.post.call_args[0][:2]
        self.assertEqual(directory['newAccount'], url)
        self.assertTrue(body.only_return_existing)
        self.assertEqual('https://ca.example/acct/7', regr.uri)

    def test_register_with_external_account_binding(self):
        directory = ca_directory()
        self.client.acme.directory = directory
        secret = b'external account secret'
        self.client.register_with_external_account_binding(
            terms_of_service_agreed=True, kid='kid-1',
            hmac_encoded=jose.b64encode(secret).decode())
        new_reg = self.client.acme.new_account.call_args[0][0]
        self.assertTrue(new_reg.terms_of_service_agreed)
        eab = new_reg.external_account_binding
        header = json.loads(jose.b64decode(eab['protected']).decode())
        self.assertEqual('kid-1', header['kid'])
        self.assertEqual('HS256', header['alg'])
        self.assertEqual(directory['newAccount'], header['url'])
        self.assertEqual(self.client.net.key.public_key().to_partial_json(),
                         json.loads(jose.b64decode(eab['payload']).decode()))
        self.assertTrue(acme_jws.JWS.from_json(eab).verify(
            jose.JWKOct(key=secret)))

    def test_obtain_uses_configured_provider(self):
        provider = mock.Mock(typ='http-01')
        self.client.set_http01_provider(provider)
        authzr = self._authzr('example.com', 'dns-01', 'http-01')
        pems = self._order(authzr)
        resource = self.client.obtain_for_csr(b'csr', bundle=True)

        challb = authzr.body.challenges[1]
        provider.present.assert_called_once_with(
            'example.com', challb, self.client.net.key)
        provider.wait.assert_called_once_with()
        self.assertEqual(challb,
                         self.client.acme.answer_challenge.call_args[0][0])
        provider.cleanup.assert_called_once_with(
            'example.com', challb, self.client.net.key)
        self.assertEqual(b''.join(pems), resource.certificate)
        self.assertEqual(pems[1], resource.issuer_certificate)

    def test_obtain_leaf_only(self):
        self.client.set_dns01_provider(mock.Mock(typ='dns-01'))
        pems = self._order(self._authzr('example.com', 'dns-01'))
        resource = self.client.obtain_for_csr(b'csr', bundle=False)
        self.assertEqual(pems[0], resource.certificate)

    def test_obtain_without_matching_provider(self):
        provider = mock.Mock(typ='http-01')
        self.client.set_http01_provider(provider)
        self._order(self._authzr('example.com', 'dns-01'))
        self.assert_raises_regexp(
            Error, 'CA did not offer a challenge .* offered: dns-01, '
            'configured: http-01', self.client.obtain_for_csr, b'csr')
        self.assertFalse(provider.present.called)

    def test_obtain_cleans_up_on_failure(self):
        provider = mock.Mock(typ='http-01')
        self.client.set_http01_provider(provider)
        self._order(self._authzr('example.com', 'http-01'))
        self.client.acme.poll_and_finalize.side_effect = (
            acme_errors.TimeoutError())
        self.assert_raises_regexp(
            Error, 'Challenge validation has failed',
            self.client.obtain_for_csr, b'csr')
        self.assertTrue(provider.cleanup.called)


class TestLoader(unittest.TestLoader):
    """certfetcher test loader."""

    def load_tests_from_subclass(self, subcls):
        """Load tests which subclass from specific test case class."""
        module = __import__(__name__)
        return self.suiteClass([
            self.loadTestsFromTestCase(getattr(module, attr))
            for attr in dir(module)
            if isinstance(getattr(module, attr), type)
            and issubclass(getattr(module, attr), subcls)])


def test(verbose=False):
    """Run unit tests and doctests, return whether they passed."""
    suite = unittest.TestSuite((
        TestLoader().load_tests_from_subclass(UnitTestCase),
        doctest.DocTestSuite(optionflags=(
            doctest.ELLIPSIS | doctest.IGNORE_EXCEPTION_DETAIL)),
    ))
    return unittest.TextTestRunner(
        verbosity=(2 if verbose else 1)).run(suite).wasSuccessful()


if __name__ == '__main__':
    raise SystemExit(0 if test() else 1)
