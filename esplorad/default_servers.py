"""Well-known Electrum servers used to seed peer discovery."""

from __future__ import annotations

import logging
from typing import Protocol

from esplorad.chain import Network
from esplorad.electrum import Hostname, Service
from esplorad.errors import ElectrsError

log = logging.getLogger(__name__)


class _Discovery(Protocol):
    def add_default_server(self, hostname: Hostname, services: list[Service]) -> None: ...


# (hostname, tcp port, ssl port); None where the service is not offered.
_MAINNET: tuple[tuple[str, int | None, int | None], ...] = (
    ("3smoooajg7qqac2y.onion", 50001, 50002),
    ("81-7-10-251.blue.kundencontroller.de", None, 50002),
    ("E-X.not.fyi", 50001, 50002),
    ("VPS.hsmiths.com", 50001, 50002),
    ("b.ooze.cc", 50001, 50002),
    ("bauerjda5hnedjam.onion", 50001, 50002),
    ("bauerjhejlv6di7s.onion", 50001, 50002),
    ("bitcoin.corgi.party", 50001, 50002),
    ("bitcoin3nqy3db7c.onion", 50001, 50002),
    ("bitcoins.sk", 50001, 50002),
    ("btc.cihar.com", 50001, 50002),
    ("btc.xskyx.net", 50001, 50002),
    ("currentlane.lovebitco.in", 50001, 50002),
    ("daedalus.bauerj.eu", 50001, 50002),
    ("electrum.jochen-hoenicke.de", 50003, 50005),
    ("dragon085.startdedicated.de", None, 50002),
    ("e-1.claudioboxx.com", 50001, 50002),
    ("e.keff.org", 50001, 50002),
    ("electrum-server.ninja", 50001, 50002),
    ("electrum-unlimited.criptolayer.net", None, 50002),
    ("electrum.eff.ro", 50001, 50002),
    ("electrum.festivaldelhumor.org", 50001, 50002),
    ("electrum.hsmiths.com", 50001, 50002),
    ("electrum.leblancnet.us", 50001, 50002),
    ("electrum.mindspot.org", None, 50002),
    ("electrum.qtornado.com", 50001, 50002),
    ("electrum.taborsky.cz", None, 50002),
    ("electrum.villocq.com", 50001, 50002),
    ("electrum2.eff.ro", 50001, 50002),
    ("electrum2.villocq.com", 50001, 50002),
    ("electrumx.bot.nu", 50001, 50002),
    ("electrumx.ddns.net", 50001, 50002),
    ("electrumx.ftp.sh", None, 50002),
    ("electrumx.ml", 50001, 50002),
    ("electrumx.soon.it", 50001, 50002),
    ("electrumxhqdsmlu.onion", 50001, None),
    ("elx01.knas.systems", 50001, 50002),
    ("enode.duckdns.org", 50001, 50002),
    ("fedaykin.goip.de", 50001, 50002),
    ("fn.48.org", 50003, 50002),
    ("helicarrier.bauerj.eu", 50001, 50002),
    ("hsmiths4fyqlw5xw.onion", 50001, 50002),
    ("hsmiths5mjk6uijs.onion", 50001, 50002),
    ("icarus.tetradrachm.net", 50001, 50002),
    ("electrum.emzy.de", 50001, 50002),
    ("ndnd.selfhost.eu", 50001, 50002),
    ("ndndword5lpb7eex.onion", 50001, None),
    ("orannis.com", 50001, 50002),
    ("ozahtqwp25chjdjd.onion", 50001, 50002),
    ("qtornadoklbgdyww.onion", 50001, 50002),
    ("rbx.curalle.ovh", None, 50002),
    ("s7clinmo4cazmhul.onion", 50001, None),
    ("tardis.bauerj.eu", 50001, 50002),
    ("technetium.network", None, 50002),
    ("tomscryptos.com", 50001, 50002),
    ("ulrichard.ch", 50001, 50002),
    ("vmd27610.contaboserver.net", 50001, 50002),
    ("vmd30612.contaboserver.net", 50001, 50002),
    ("wsw6tua3xl24gsmi264zaep6seppjyrkyucpsmuxnjzyt3f3j6swshad.onion", 50001, 50002),
    ("xray587.startdedicated.de", None, 50002),
    ("yuio.top", 50001, 50002),
    ("bitcoin.dragon.zone", 50003, 50004),
    ("ecdsa.net", 50001, 110),
    ("btc.usebsv.com", None, 50006),
    ("e2.keff.org", 50001, 50002),
    ("electrum.hodlister.co", None, 50002),
    ("electrum3.hodlister.co", None, 50002),
    ("electrum5.hodlister.co", None, 50002),
    ("electrumx.electricnewyear.net", None, 50002),
    ("fortress.qtornado.com", 50001, 443),
    ("green-gold.westeurope.cloudapp.azure.com", 56001, 56002),
    ("electrumx.erbium.eu", 50001, 50002),
)

_TESTNET: tuple[tuple[str, int | None, int | None], ...] = (
    ("hsmithsxurybd7uh.onion", 53011, 53012),
    ("testnet.hsmiths.com", 53011, 53012),
    ("testnet.qtornado.com", 51001, 51002),
    ("testnet1.bauerj.eu", 50001, 50002),
    ("tn.not.fyi", 55001, 55002),
    ("bitcoin.cluelessperson.com", 51001, 51002),
)

_BY_NETWORK = {
    Network.BITCOIN: _MAINNET,
    Network.TESTNET: _TESTNET,
}


def _services(tcp: int | None, ssl: int | None) -> list[Service]:
    services = []
    if tcp is not None:
        services.append(Service.tcp(tcp))
    if ssl is not None:
        services.append(Service.ssl(ssl))
    return services


def default_servers(network: Network) -> list[tuple[Hostname, list[Service]]]:
    """The seed servers for a network, in order; empty where there are none."""
    return [
        (hostname, _services(tcp, ssl))
        for hostname, tcp, ssl in _BY_NETWORK.get(network, ())
    ]


def add_default_servers(discovery: _Discovery, network: Network) -> None:
    """Queue every seed server of the network; servers that cannot be added are skipped."""
    for hostname, services in default_servers(network):
        try:
            discovery.add_default_server(hostname, services)
        except ElectrsError as exc:
            log.debug("skipping default server %s: %s", hostname, exc)