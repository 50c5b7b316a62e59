import pytest

from guestwarden_host import ADMINISTRATORS_SID, fncParseSid


def test_parse_local_account_sid():
    sid = fncParseSid("S-1-5-21-1004336348-1177238915-682003330-501")
    assert sid.revision == 1
    assert sid.authority == 5
    assert sid.sub_authorities == (21, 1004336348, 1177238915, 682003330, 501)
    assert sid.rid == 501
    assert sid.is_local_account()
    assert str(sid) == "S-1-5-21-1004336348-1177238915-682003330-501"


def test_builtin_group_is_not_a_local_account():
    assert ADMINISTRATORS_SID.rid == 544
    assert ADMINISTRATORS_SID.sub_authorities == (32, 544)
    assert not ADMINISTRATORS_SID.is_local_account()


def test_rid_comparison_is_exact_not_suffix():
    guest = fncParseSid("S-1-5-21-1-2-3-501")
    lookalike = fncParseSid("S-1-5-21-1-2-3-1501")
    assert lookalike.rid != guest.rid
    assert lookalike != guest
    assert fncParseSid("s-1-5-21-1-2-3-501") == guest


def test_domain_sid_shape_is_not_local_account():
    # a bare machine/domain SID without a RID
    assert not fncParseSid("S-1-5-21-1-2-3").is_local_account()
    assert not fncParseSid("S-1-5-80-1-2-3-501").is_local_account()


@pytest.mark.parametrize("text", [
    "",
    "Guest",
    "S-1-5",
    "S-1-5-21-abc-501",
    "S-2-5-21-1-2-3-501",
    "S-1-5-21-1-2-3-4294967296",
    "S-1-5-21-1-2-3-501; Remove-Item C:\\",
])
def test_parse_rejects_malformed(text):
    with pytest.raises(ValueError):
        fncParseSid(text)
