import pytest

from webproxy.errors import AllAddressesBlocked, BlockedIP
from webproxy.guard.address_guard import AddressGuard, is_blocked_address


class TestIsBlockedAddress:
    @pytest.mark.parametrize(
        "address",
        [
            "127.0.0.1",
            "127.8.9.10",
            "10.0.0.1",
            "172.16.0.1",
            "172.31.255.255",
            "192.168.1.1",
            "169.254.169.254",
            "0.0.0.0",
            "100.64.0.1",
            "224.0.0.1",
            "::1",
            "::",
            "fe80::1",
            "fe80::1%eth0",
            "fd12:3456:789a::1",
            "::ffff:127.0.0.1",
            "2002:7f00:1::1",
        ],
    )
    def test_non_public_addresses_are_blocked(self, address):
        assert is_blocked_address(address) is True

    @pytest.mark.parametrize(
        "address",
        ["93.184.216.34", "8.8.8.8", "1.1.1.1", "2606:2800:220:1:248:1893:25c8:1946"],
    )
    def test_public_addresses_are_allowed(self, address):
        assert is_blocked_address(address) is False

    @pytest.mark.parametrize("address", ["", "not-an-ip", "999.1.1.1", "1.2.3", "::g"])
    def test_unparseable_addresses_fail_closed(self, address):
        assert is_blocked_address(address) is True


class TestAddressGuard:
    @pytest.mark.asyncio
    async def test_public_host_passes(self, guard):
        result = await guard.check("example.com")
        assert result.first_allowed == "93.184.216.34"
        assert result.blocked == []

    @pytest.mark.asyncio
    async def test_host_with_one_public_address_passes(self, guard):
        result = await guard.check("mixed.example")
        assert result.blocked == ["10.0.0.5"]
        assert result.first_allowed == "93.184.216.38"

    @pytest.mark.asyncio
    async def test_host_with_only_private_addresses_is_blocked(self, guard):
        with pytest.raises(AllAddressesBlocked) as exc:
            await guard.check("internal.example")
        assert isinstance(exc.value, BlockedIP)
        assert exc.value.addresses == ["10.1.2.3", "fd00::1"]

    @pytest.mark.asyncio
    async def test_unresolvable_host_is_blocked(self, guard):
        with pytest.raises(AllAddressesBlocked):
            await guard.check("nowhere.invalid")

    @pytest.mark.asyncio
    async def test_ip_literal_skips_dns(self, guard, resolver):
        with pytest.raises(AllAddressesBlocked):
            await guard.check("127.0.0.1")
        result = await guard.check("93.184.216.34")
        assert result.addresses == ["93.184.216.34"]
        assert resolver.lookups == []

    @pytest.mark.asyncio
    async def test_bracketed_ipv6_literal(self, guard):
        with pytest.raises(AllAddressesBlocked):
            await guard.check("[::1]")

    @pytest.mark.asyncio
    async def test_garbage_from_resolver_is_blocked(self):
        async def resolver(_host):
            return ["garbage", "also-garbage"]

        guard = AddressGuard(resolver=resolver)
        with pytest.raises(AllAddressesBlocked):
            await guard.check("weird.example")

    @pytest.mark.asyncio
    async def test_classify_does_not_raise(self, guard):
        result = await guard.classify("loopback.example")
        assert result.all_blocked is True
        assert result.first_allowed is None
