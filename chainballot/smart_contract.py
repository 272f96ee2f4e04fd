"""
Election application (PyTeal).

Box layout:
  e<eid>            start(8) | end(8) | active(8) | candidate_count(8) | meta json
  c<eid><cid>       vote_count(8) | meta json
  v<voter_ref>      "1" once the voter is verified
  b<eid><voter_ref> chosen candidate id (8)

Every failing assertion carries its reason as a TEAL comment; the client maps
the failing pc back to that comment through the compiler source map.
"""
from pyteal import *

ADMIN_ONLY = "Only admin can perform this action"
ELECTION_MISSING = "Election does not exist"
ELECTION_SEQUENCE = "Election id out of sequence"
BAD_WINDOW = "End time must be after start time"
CANDIDATE_SEQUENCE = "Candidate id out of sequence"
CANDIDATE_MISSING = "Invalid candidate"
NOT_ACTIVE = "Election is not active"
NOT_STARTED = "Election has not started"
ALREADY_ENDED = "Election has ended"
NOT_VERIFIED = "Only verified voters can vote"
ALREADY_VOTED = "Already voted in this election"

ADMIN_KEY = Bytes("admin")
COUNT_KEY = Bytes("election_count")


def _election_box(eid: Expr) -> Expr:
    return Concat(Bytes("e"), eid)


def _candidate_box(eid: Expr, cid: Expr) -> Expr:
    return Concat(Bytes("c"), eid, cid)


def _verified_box(voter_ref: Expr) -> Expr:
    return Concat(Bytes("v"), voter_ref)


def _ballot_box(eid: Expr, voter_ref: Expr) -> Expr:
    return Concat(Bytes("b"), eid, voter_ref)


def _box_exists(name: Expr) -> Expr:
    length = BoxLen(name)
    return Seq(length, length.hasValue())


def _field(box: Expr, offset: int) -> Expr:
    return Btoi(BoxExtract(box, Int(offset), Int(8)))


def _only_admin() -> Expr:
    return Assert(Txn.sender() == App.globalGet(ADMIN_KEY), comment=ADMIN_ONLY)


def build_approval_program() -> Expr:
    args = Txn.application_args

    on_create = Seq(
        App.globalPut(ADMIN_KEY, Txn.sender()),
        App.globalPut(COUNT_KEY, Int(0)),
        Approve(),
    )

    # create_election(eid, start, end, active, meta)
    create_election = Seq(
        Assert(args.length() == Int(6)),
        _only_admin(),
        Assert(Btoi(args[1]) == App.globalGet(COUNT_KEY) + Int(1), comment=ELECTION_SEQUENCE),
        Assert(Btoi(args[2]) < Btoi(args[3]), comment=BAD_WINDOW),
        BoxPut(_election_box(args[1]), Concat(args[2], args[3], args[4], Itob(Int(0)), args[5])),
        App.globalPut(COUNT_KEY, Btoi(args[1])),
        Log(args[1]),
        Approve(),
    )

    # add_candidate(eid, cid, meta)
    add_candidate = Seq(
        Assert(args.length() == Int(4)),
        _only_admin(),
        Assert(_box_exists(_election_box(args[1])), comment=ELECTION_MISSING),
        Assert(
            Btoi(args[2]) == _field(_election_box(args[1]), 24) + Int(1),
            comment=CANDIDATE_SEQUENCE,
        ),
        BoxReplace(_election_box(args[1]), Int(24), args[2]),
        BoxPut(_candidate_box(args[1], args[2]), Concat(Itob(Int(0)), args[3])),
        Log(args[2]),
        Approve(),
    )

    # verify_voter(voter_ref)
    verify_voter = Seq(
        Assert(args.length() == Int(2)),
        _only_admin(),
        Assert(Len(args[1]) == Int(32)),
        BoxPut(_verified_box(args[1]), Bytes("1")),
        Approve(),
    )

    # set_status(eid, active)
    set_status = Seq(
        Assert(args.length() == Int(3)),
        _only_admin(),
        Assert(_box_exists(_election_box(args[1])), comment=ELECTION_MISSING),
        BoxReplace(_election_box(args[1]), Int(16), args[2]),
        Approve(),
    )

    # delete_election(eid)
    delete_election = Seq(
        Assert(args.length() == Int(2)),
        _only_admin(),
        Assert(_box_exists(_election_box(args[1])), comment=ELECTION_MISSING),
        Pop(BoxDelete(_election_box(args[1]))),
        Approve(),
    )

    # vote(eid, cid, voter_ref); the service account relays on behalf of the voter.
    election = _election_box(args[1])
    candidate = _candidate_box(args[1], args[2])
    vote = Seq(
        Assert(args.length() == Int(4)),
        _only_admin(),
        Assert(Len(args[3]) == Int(32)),
        Assert(_box_exists(election), comment=ELECTION_MISSING),
        Assert(Global.latest_timestamp() >= _field(election, 0), comment=NOT_STARTED),
        Assert(Global.latest_timestamp() <= _field(election, 8), comment=ALREADY_ENDED),
        Assert(_field(election, 16) == Int(1), comment=NOT_ACTIVE),
        Assert(_box_exists(_verified_box(args[3])), comment=NOT_VERIFIED),
        Assert(Not(_box_exists(_ballot_box(args[1], args[3]))), comment=ALREADY_VOTED),
        Assert(_box_exists(candidate), comment=CANDIDATE_MISSING),
        BoxReplace(candidate, Int(0), Itob(_field(candidate, 0) + Int(1))),
        BoxPut(_ballot_box(args[1], args[3]), args[2]),
        Log(args[2]),
        Approve(),
    )

    return Cond(
        [Txn.application_id() == Int(0), on_create],
        [
            Txn.on_completion() == OnComplete.NoOp,
            Cond(
                [args[0] == Bytes("create_election"), create_election],
                [args[0] == Bytes("add_candidate"), add_candidate],
                [args[0] == Bytes("verify_voter"), verify_voter],
                [args[0] == Bytes("set_status"), set_status],
                [args[0] == Bytes("delete_election"), delete_election],
                [args[0] == Bytes("vote"), vote],
            ),
        ],
        [Txn.on_completion() == OnComplete.OptIn, Reject()],
        [Txn.on_completion() == OnComplete.CloseOut, Reject()],
        [Txn.on_completion() == OnComplete.UpdateApplication, Reject()],
        [Txn.on_completion() == OnComplete.DeleteApplication, Reject()],
    )


def build_clear_program() -> Expr:
    return Approve()


def compile_contract() -> tuple[str, str]:
    approval = compileTeal(
        build_approval_program(),
        mode=Mode.Application,
        version=8,
    )
    clear = compileTeal(
        build_clear_program(),
        mode=Mode.Application,
        version=8,
    )
    return approval, clear


if __name__ == "__main__":
    approval_teal, clear_teal = compile_contract()
    print(approval_teal)
    print(clear_teal)
