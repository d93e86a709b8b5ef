import pytest

from guildkeeper.datatypes.discord_datatypes import ChannelID, GuildID, UserID


class DummyObj:
    def __init__(self, id_val=None):
        self.id = id_val


def test_userid_from_int_and_str_and_equality_and_hash():
    u1 = UserID(12345)
    assert u1.to_int() == 12345
    assert str(u1) == "12345"

    u2 = UserID(" 12345 ")
    assert u1 == u2

    # from_user helper
    u3 = UserID.from_user(DummyObj(id_val=111))  # type: ignore
    assert u3.to_int() == 111

    # equality with raw types
    assert u3 == 111
    assert u3 == "111"
    assert u3 != True  # noqa: E712

    # hashing and set membership
    assert len({u1, u2, u3, UserID(u3)}) == 2


def test_different_kinds_never_compare_equal():
    assert GuildID(5) != UserID(5)
    assert repr(GuildID(5)) == "GuildID('5')"


@pytest.mark.parametrize("value", [[], {"not": "valid"}, True, -1, "-7", "abc"])
def test_userid_invalid(value):
    with pytest.raises(ValueError):
        UserID(value)  # type: ignore


@pytest.mark.parametrize("cls, val_int", [(GuildID, 222), (ChannelID, 333)])
def test_id_wrappers_common_behaviour(cls, val_int):
    inst = cls(val_int)
    assert inst.to_int() == val_int
    assert str(inst) == str(val_int)
    assert inst == cls(str(val_int))

    dummy = DummyObj(id_val=val_int)
    from_obj = cls.from_guild(dummy) if cls is GuildID else cls.from_channel(dummy)  # type: ignore
    assert from_obj == val_int
    assert from_obj == str(val_int)
