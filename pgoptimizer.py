#!/usr/bin/env python3

"""
LP-based placement group optimizer.

Computes a placement of replicated PGs onto weighted OSDs grouped in failure
domains, either from scratch or incrementally with minimal data movement.

GPLv3 or later
"""


import argparse
import json
import logging
import lzma
import math
from collections import defaultdict
from typing import Optional

import pulp


def parse_args():
    cli = argparse.ArgumentParser()

    cli.add_argument("-v", "--verbose", action="count", default=0,
                    help="increase program verbosity")
    cli.add_argument("-q", "--quiet", action="count", default=0,
                    help="decrease program verbosity")
    cli.add_argument("--imbalance-tolerance", type=float, default=0.01,
                     help=("relative imbalance the change optimization may add on top of the best balance "
                           "to avoid data movement. default: %(default)s"))
    cli.add_argument("--movement-weight", type=float, default=1.0,
                     help="objective weight of one moved pg slot in change optimization. default: %(default)s")
    cli.add_argument("--time-limit", type=float,
                     help="abort the lp solver after this many seconds")
    cli.add_argument("--gap-rel", type=float, default=1e-6,
                     help="relative optimality gap accepted from the solver. default: %(default)s")

    sp = cli.add_subparsers(dest='mode')
    sp.required=True

    treep = argparse.ArgumentParser(add_help=False)
    treep.add_argument("--tree", "-t", required=True,
                       help="osd tree json file, flat {domain: {osd: weight}} or nested node list")
    treep.add_argument("--max-level", type=int,
                       help="leaf level of a nested osd tree. default: deepest leaf")

    outp = argparse.ArgumentParser(add_help=False)
    outp.add_argument("--output", "-o",
                      help="store the resulting pg assignment to this json file (.xz compresses)")
    outp.add_argument("--format", choices=['plain', 'json'], default='plain',
                      help="output formatting of the statistics: plain or json. default: %(default)s")
    outp.add_argument("--osds", action='store_true',
                      help="also show per-osd pg counts")

    flattensp = sp.add_parser('flatten', parents=[treep],
                              help="flatten a nested osd tree into per-domain osd weights")
    flattensp.add_argument("--output", "-o",
                           help="store the flat tree to this json file")

    initialsp = sp.add_parser('initial', parents=[treep, outp],
                              help="compute a pg placement from scratch")
    initialsp.add_argument("--pg-size", type=int, default=3,
                           help="replicas per pg. default: %(default)s")
    initialsp.add_argument("--pg-count", type=int, required=True,
                           help="number of pgs to place")

    changesp = sp.add_parser('change', parents=[treep, outp],
                             help="recompute a pg placement for a changed osd tree")
    changesp.add_argument("--prev", "-p", required=True,
                          help="previous pg assignment json file")
    changesp.add_argument("--pg-size", type=int, default=3,
                          help="replicas per pg. default: %(default)s")
    changesp.add_argument("--pg-count", type=int,
                          help="number of pgs to place. default: pg count of the previous assignment")

    statssp = sp.add_parser('stats', parents=[treep],
                            help="show statistics of an existing pg assignment")
    statssp.add_argument("assignment",
                         help="pg assignment json file")
    statssp.add_argument("--prev", "-p",
                         help="compare movement against this previous assignment")
    statssp.add_argument("--pg-size", type=int, default=3,
                         help="replicas per pg. default: %(default)s")
    statssp.add_argument("--format", choices=['plain', 'json'], default='plain',
                         help="output formatting: plain or json. default: %(default)s")
    statssp.add_argument("--osds", action='store_true',
                         help="also show per-osd pg counts")

    args = cli.parse_args()
    return args



def log_setup(setting, default=1):
    """
    Perform setup for the logger.
    Run before any logging.log thingy is called.

    if setting is 0: the default is used, which is WARNING.
    else: setting + default is used.
    """

    levels = (logging.ERROR, logging.WARNING, logging.INFO,
              logging.DEBUG, logging.NOTSET)

    factor = clamp(default + setting, 0, len(levels) - 1)
    level = levels[factor]

    logging.basicConfig(level=level, format="[%(asctime)s] %(message)s")
    logging.captureWarnings(True)


def clamp(number, smallest, largest):
    """ return number but limit it to the inclusive given value range """
    return max(smallest, min(number, largest))



class strlazy:
    """
    to be used like this: logging.debug("rolf %s", strlazy(lambda: do_something()))
    so do_something is only called when the debug message is actually printed
    do_something could also be an f-string.
    """
    def __init__(self, fun):
        self.fun = fun
    def __str__(self):
        return self.fun()


class OptimizerError(Exception):
    """
    base for all errors raised by the optimizer
    """


class StructuralError(OptimizerError):
    """
    the osd tree is malformed: wrong leaf level, missing weight, duplicate osd...
    """


class InfeasibleError(OptimizerError):
    """
    no placement is possible at all, e.g. fewer osds than pg_size or no weight.
    the optimize entry points turn this into an empty, flagged assignment.
    """


class SolverError(OptimizerError):
    """
    the lp solver didn't deliver an optimal solution (timeout, numerical trouble).
    recoverable: retry with a relaxed OptimizerConfig.
    """


class OptimizerConfig:
    """
    solver and optimization tunables, passed into every optimize call.
    """

    def __init__(self,
                 imbalance_tolerance: float = 0.01,
                 movement_weight: float = 1.0,
                 time_limit: Optional[float] = None,
                 gap_rel: float = 1e-6,
                 solver_msg: bool = False):

        # relative imbalance the change optimization may add
        # on top of the best achievable one to keep pgs in place
        self.imbalance_tolerance = imbalance_tolerance

        # objective cost of one moved pg slot, relative to the imbalance variable
        self.movement_weight = movement_weight

        # seconds until the solver gives up, None = unlimited
        self.time_limit = time_limit

        # accepted relative optimality gap
        self.gap_rel = gap_rel

        # let the solver print its log
        self.solver_msg = solver_msg

        if imbalance_tolerance < 0:
            raise ValueError(f"imbalance tolerance must be >= 0, not {imbalance_tolerance!r}")
        if movement_weight <= 0:
            raise ValueError(f"movement weight must be > 0, not {movement_weight!r}")

    def relaxed(self, factor=10):
        """
        return a config with looser tolerances, for retrying after a SolverError.
        """
        return OptimizerConfig(
            imbalance_tolerance=self.imbalance_tolerance * factor,
            movement_weight=self.movement_weight,
            time_limit=None if self.time_limit is None else self.time_limit * factor,
            gap_rel=min(self.gap_rel * factor, 0.1),
            solver_msg=self.solver_msg,
        )

    def __repr__(self):
        return (f"OptimizerConfig(imbalance_tolerance={self.imbalance_tolerance}, "
                f"movement_weight={self.movement_weight}, time_limit={self.time_limit}, "
                f"gap_rel={self.gap_rel})")


# slots an osd's rounded pg count may deviate from its fractional target
QUANTIZATION_SLACK = 1

# values closer than this to an integer are treated as that integer
ROUND_EPSILON = 1e-6


def load_json(filename):
    """
    load json from a file, transparently decompressing .xz files
    """
    if filename.endswith(".xz"):
        with lzma.open(filename, "rt") as hdl:
            return json.load(hdl)

    with open(filename) as hdl:
        return json.load(hdl)


def save_json(filename, data):
    if filename.endswith(".xz"):
        with lzma.open(filename, "wt") as hdl:
            json.dump(data, hdl, indent='\t')
    else:
        with open(filename, "w") as hdl:
            json.dump(data, hdl, indent='\t')

    logging.info(f"saved to {filename}")


# ----------------------------------------------------------------------------
# osd tree


class DomainNode:
    """
    inner node of the osd tree: a failure domain at some level.
    """
    def __init__(self, level: int, children: list):
        self.level = level
        self.children = children

    def __repr__(self):
        return f"DomainNode(level={self.level}, children={self.children!r})"


class DeviceLeaf:
    """
    leaf of the osd tree: one osd with its weight.
    """
    def __init__(self, level: int, id: int, weight: float):
        self.level = level
        self.id = id
        self.weight = weight

    def __repr__(self):
        return f"DeviceLeaf(level={self.level}, id={self.id}, weight={self.weight})"


def parse_tree(raw_nodes):
    """
    convert a raw nested osd tree (list of dicts) into DomainNode/DeviceLeaf objects.

    domain node: {"level": 1, "children": [...]}
    device leaf: {"level": 3, "id": 7, "size": 3.6} ("weight" works too)

    already-parsed nodes are passed through.
    """
    if not isinstance(raw_nodes, (list, tuple)):
        raise StructuralError(f"osd tree nodes must be a list, not {type(raw_nodes).__name__}")

    ret = list()
    for raw in raw_nodes:
        if isinstance(raw, (DomainNode, DeviceLeaf)):
            ret.append(raw)
            continue

        if not isinstance(raw, dict):
            raise StructuralError(f"osd tree node must be a dict, got {raw!r}")

        level = raw.get("level")
        if level is None:
            raise StructuralError(f"osd tree node without level: {raw!r}")

        try:
            level = int(level)
        except (TypeError, ValueError):
            raise StructuralError(f"osd tree node level {level!r} is not an integer")

        if "children" in raw:
            ret.append(DomainNode(level, parse_tree(raw["children"])))

        elif "id" in raw:
            try:
                osdid = int(raw["id"])
            except (TypeError, ValueError):
                raise StructuralError(f"osd id {raw['id']!r} is not an integer")

            weight = raw.get("weight", raw.get("size"))
            if weight is None:
                raise StructuralError(f"osd.{osdid} has no weight")
            try:
                weight = float(weight)
            except (TypeError, ValueError):
                raise StructuralError(f"osd.{osdid} has non-numeric weight {weight!r}")
            ret.append(DeviceLeaf(level, osdid, weight))

        else:
            raise StructuralError(f"osd tree node has neither children nor id: {raw!r}")

    return ret


def max_leaf_level(nodes):
    """ deepest level of any leaf in the tree """
    deepest = None
    for node in nodes:
        if isinstance(node, DeviceLeaf):
            level = node.level
        else:
            level = max_leaf_level(node.children)

        if level is not None and (deepest is None or level > deepest):
            deepest = level

    return deepest


def _collect_leaves(node, max_level, devices):
    if isinstance(node, DeviceLeaf):
        if node.level != max_level:
            raise StructuralError(f"osd.{node.id} is at level {node.level}, "
                                  f"but leaves must be at level {max_level}")
        if not node.weight > 0:
            raise StructuralError(f"osd.{node.id} has non-positive weight {node.weight}")
        if node.id in devices:
            raise StructuralError(f"osd.{node.id} appears twice in the same domain")
        devices[node.id] = node.weight
        return

    if node.level >= max_level:
        raise StructuralError(f"domain at level {node.level} is not above the leaf level {max_level}")

    for child in node.children:
        _collect_leaves(child, max_level, devices)


def flatten_tree(topology_tree, accumulator, level, max_level):
    """
    flatten a nested osd tree into {domain_name: {osdid: weight}}.

    every node directly below the root (at `level`) becomes a failure domain
    named domN, all leaves below it are collected into that domain.
    leaves have to be at max_level.

    the accumulator is not modified, the flattened tree is returned
    with the accumulator's domains first.
    """
    nodes = parse_tree(topology_tree)

    ret = dict(accumulator)
    seen = dict()
    for domain_devices in ret.values():
        for osdid in domain_devices:
            seen[osdid] = None

    for node in nodes:
        if node.level != level:
            raise StructuralError(f"top level node is at level {node.level}, expected {level}")

        devices = dict()
        _collect_leaves(node, max_level, devices)

        for osdid in devices:
            if osdid in seen:
                raise StructuralError(f"osd.{osdid} is in more than one failure domain")
            seen[osdid] = None

        ret[f"dom{len(ret) + 1}"] = devices

    return ret


def normalize_osd_tree(osd_tree, max_level=None):
    """
    accept a flat {domain: {osdid: weight}} or a nested node list
    and return the validated flat form, with int osd ids and float weights.
    empty domains are dropped.
    """
    if isinstance(osd_tree, (list, tuple)):
        nodes = parse_tree(osd_tree)
        if not nodes:
            return dict()
        if max_level is None:
            max_level = max_leaf_level(nodes)
        osd_tree = flatten_tree(nodes, {}, nodes[0].level, max_level)

    if not isinstance(osd_tree, dict):
        raise StructuralError(f"osd tree must be a dict or a node list, not {type(osd_tree).__name__}")

    ret = dict()
    seen = set()
    for domain, devices in osd_tree.items():
        if not isinstance(devices, dict):
            raise StructuralError(f"domain {domain!r} must map osd ids to weights")

        domain_devices = dict()
        for osdid, weight in devices.items():
            try:
                osdid = int(osdid)
            except (TypeError, ValueError):
                raise StructuralError(f"osd id {osdid!r} in domain {domain!r} is not an integer")

            if weight is None:
                raise StructuralError(f"osd.{osdid} has no weight")
            try:
                weight = float(weight)
            except (TypeError, ValueError):
                raise StructuralError(f"osd.{osdid} has non-numeric weight {weight!r}")
            if not weight > 0:
                raise StructuralError(f"osd.{osdid} has non-positive weight {weight}")

            if osdid in seen:
                raise StructuralError(f"osd.{osdid} is in more than one failure domain")
            seen.add(osdid)

            domain_devices[osdid] = weight

        if domain_devices:
            if str(domain) in ret:
                raise StructuralError(f"failure domain name {str(domain)!r} is used twice")
            ret[str(domain)] = domain_devices

    return ret


def osd_domains(osd_tree):
    """ return {osdid: domain_name} """
    ret = dict()
    for domain, devices in osd_tree.items():
        for osdid in devices:
            ret[osdid] = domain
    return ret


def osd_weights(osd_tree):
    """ return {osdid: weight} """
    ret = dict()
    for devices in osd_tree.values():
        ret.update(devices)
    return ret


def ideal_slots(osd_tree, pg_size, pg_count):
    """
    return {osdid: pg slot count the osd would get when distributed purely by weight}
    """
    weights = osd_weights(osd_tree)
    weight_sum = sum(weights.values())
    if weight_sum <= 0:
        return {osdid: 0.0 for osdid in weights}

    total_slots = pg_size * pg_count
    return {osdid: weight * total_slots / weight_sum for osdid, weight in weights.items()}


def normalize_pgs(pgs):
    """
    return the pg assignment as list of osd lists, indexed by pg number.
    accepts a list or a {pgnum: [osd, ...]} dict (json string keys are fine).
    """
    if pgs is None:
        return None

    if isinstance(pgs, dict):
        by_num = {int(pgnum): osds for pgnum, osds in pgs.items()}
        if not by_num:
            return list()
        if min(by_num) < 0:
            raise ValueError("pg numbers must be >= 0")
        pg_count = max(by_num) + 1
        return [[int(osd) for osd in by_num.get(pgnum, [])] for pgnum in range(pg_count)]

    return [[int(osd) for osd in osds] for osds in pgs]


# ----------------------------------------------------------------------------
# linear program


def domain_replica_limit(osd_tree, pg_size):
    """
    how many replicas of one pg may share a failure domain.

    returns the smallest limit L so that sum(min(L, osds_in_domain)) >= pg_size.
    L == 1 is full failure domain separation, L > 1 means degraded placement,
    which happens when there are fewer domains than pg_size.
    """
    osd_count = sum(len(devices) for devices in osd_tree.values())
    if osd_count == 0:
        raise InfeasibleError("no osds in the tree")

    if osd_count < pg_size:
        raise InfeasibleError(f"only {osd_count} osds for pg_size={pg_size}")

    if sum(osd_weights(osd_tree).values()) <= 0:
        raise InfeasibleError("total osd weight is zero")

    domain_sizes = [len(devices) for devices in osd_tree.values()]
    for limit in range(1, pg_size + 1):
        if sum(min(limit, size) for size in domain_sizes) >= pg_size:
            return limit

    # osd_count >= pg_size guarantees the loop returns
    raise InfeasibleError(f"can't place {pg_size} replicas")


def _lp_name(prefix, osdid):
    # pulp replaces '-' in names, keep negative ids unique
    if osdid < 0:
        return f"{prefix}_n{-osdid}"
    return f"{prefix}_{osdid}"


class LPProblem:
    """
    the placement linear program and the handles to its variables.
    """

    def __init__(self, problem, osd_vars, keep_vars, imbalance,
                 ideal, limit, pg_size, pg_count, prev_counts=None):
        self.problem = problem
        # osdid -> pg slots assigned to the osd
        self.osd_vars = osd_vars
        # osdid -> pg slots that stay where they were, change mode only
        self.keep_vars = keep_vars
        # max relative deviation of an osd from its ideal slot count
        self.imbalance = imbalance
        # osdid -> slot count proportional to the osd weight
        self.ideal = ideal
        # replicas of one pg allowed in the same failure domain
        self.limit = limit
        self.pg_size = pg_size
        self.pg_count = pg_count
        # osdid -> keepable slots of the previous assignment
        self.prev_counts = prev_counts

    @property
    def degraded(self):
        return self.limit > 1

    @property
    def is_change(self):
        return self.prev_counts is not None


def build_problem(osd_tree, pg_size, pg_count, prev_counts=None,
                  imbalance_bound=None, config: Optional[OptimizerConfig] = None):
    """
    construct the lp for distributing pg_count * pg_size slots over the osds.

    osd_tree: flat {domain: {osdid: weight}}
    prev_counts: {osdid: slots} of the previous assignment that could stay.
                 when given, the lp minimizes movement.
    imbalance_bound: max relative deviation of any osd from its ideal slot count,
                     plus one slot of rounding room.
    """
    if config is None:
        config = OptimizerConfig()

    if pg_size < 1 or pg_count < 1:
        raise ValueError(f"pg_size and pg_count must be positive, got {pg_size}, {pg_count}")

    limit = domain_replica_limit(osd_tree, pg_size)
    if limit > 1:
        logging.info(f"only {len(osd_tree)} failure domains for pg_size={pg_size}, "
                     f"allowing {limit} replicas per domain")

    total_slots = pg_size * pg_count
    ideal = ideal_slots(osd_tree, pg_size, pg_count)
    osds = sorted(ideal.keys())

    change_mode = prev_counts is not None
    problem = pulp.LpProblem("pg_placement_change" if change_mode else "pg_placement",
                             pulp.LpMinimize)

    # one pg can't use an osd twice
    osd_vars = dict()
    for osdid in osds:
        osd_vars[osdid] = pulp.LpVariable(_lp_name("osd", osdid), lowBound=0, upBound=pg_count)

    imbalance = pulp.LpVariable("imbalance", lowBound=0)

    problem += pulp.lpSum(osd_vars[osdid] for osdid in osds) == total_slots, "total_slots"

    # domain names may contain anything, so number the constraints
    for idx, domain in enumerate(sorted(osd_tree.keys())):
        devices = sorted(osd_tree[domain].keys())
        problem += (pulp.lpSum(osd_vars[osdid] for osdid in devices) <= limit * pg_count,
                    f"domain_{idx}")

    for osdid in osds:
        osd_ideal = ideal[osdid]
        problem += (osd_vars[osdid] - osd_ideal * imbalance <= osd_ideal,
                    _lp_name("over", osdid))
        problem += (osd_vars[osdid] + osd_ideal * imbalance >= osd_ideal,
                    _lp_name("under", osdid))

    if imbalance_bound is not None:
        # the previous assignment is integral, so it gets the rounding room.
        # otherwise an unchanged tree could force movement.
        for osdid in osds:
            osd_ideal = ideal[osdid]
            problem += (osd_vars[osdid] <= osd_ideal * (1 + imbalance_bound) + QUANTIZATION_SLACK,
                        _lp_name("max", osdid))
            problem += (osd_vars[osdid] >= osd_ideal * (1 - imbalance_bound) - QUANTIZATION_SLACK,
                        _lp_name("min", osdid))

    keep_vars = dict()
    if not change_mode:
        problem += imbalance
    else:
        prev_total = 0
        for osdid in osds:
            prev = prev_counts.get(osdid, 0)
            prev_total += prev
            keep_vars[osdid] = pulp.LpVariable(_lp_name("keep", osdid), lowBound=0, upBound=prev)
            problem += keep_vars[osdid] <= osd_vars[osdid], _lp_name("kept", osdid)

        moved = prev_total - pulp.lpSum(keep_vars[osdid] for osdid in osds)

        if imbalance_bound is None:
            # no hard bound: trade one moved slot against one slot of imbalance
            imbalance_weight = total_slots
        else:
            # balance is bounded, it just breaks ties between equal movements.
            # one slot changes the imbalance by at most 1/ideal.
            imbalance_weight = 1e-3 * config.movement_weight * min(1.0, min(ideal.values()))

        problem += config.movement_weight * moved + imbalance_weight * imbalance

    logging.debug(strlazy(lambda: f"lp has {len(problem.variables())} variables "
                                  f"and {len(problem.constraints)} constraints"))

    return LPProblem(problem, osd_vars, keep_vars, imbalance,
                     ideal, limit, pg_size, pg_count, prev_counts)


def solve_problem(lp, config: Optional[OptimizerConfig] = None):
    """
    solve the lp.
    returns ({osdid: fractional_slot_count}, objective_value)
    """
    if config is None:
        config = OptimizerConfig()

    solver = pulp.PULP_CBC_CMD(msg=config.solver_msg,
                               timeLimit=config.time_limit,
                               gapRel=config.gap_rel)

    status = lp.problem.solve(solver)
    status_name = pulp.LpStatus[status]
    logging.debug(f"lp {lp.problem.name} solved: {status_name}")

    if status == pulp.LpStatusInfeasible:
        raise InfeasibleError(f"no feasible placement for lp {lp.problem.name}")

    if status != pulp.LpStatusOptimal:
        raise SolverError(f"lp solver failed for {lp.problem.name}: {status_name}")

    targets = dict()
    for osdid, var in lp.osd_vars.items():
        value = var.varValue
        targets[osdid] = 0.0 if value is None else max(0.0, value)

    objective = pulp.value(lp.problem.objective)
    if objective is None:
        objective = 0.0

    return targets, objective


def solved_imbalance(lp):
    """ the imbalance variable's value after solving """
    value = lp.imbalance.varValue
    return 0.0 if value is None else max(0.0, value)


# ----------------------------------------------------------------------------
# integer placement


def largest_remainder(values, total, caps=None):
    """
    round {key: float} to {key: int} summing to exactly total.

    every value is floored, the missing units go to the keys with the
    largest fractional remainder (ties: iteration order of values).
    caps limits the result per key.
    """
    keys = list(values.keys())
    order = {key: pos for pos, key in enumerate(keys)}

    result = dict()
    remainders = dict()
    for key in keys:
        value = max(0.0, values[key])
        count = int(math.floor(value + ROUND_EPSILON))
        if caps is not None:
            count = min(count, caps[key])
        result[key] = count
        remainders[key] = value - count

    missing = total - sum(result.values())

    if missing > 0:
        candidates = sorted(keys, key=lambda key: (-remainders[key], order[key]))
        while missing > 0:
            progress = False
            for key in candidates:
                if missing == 0:
                    break
                if caps is not None and result[key] >= caps[key]:
                    continue
                result[key] += 1
                missing -= 1
                progress = True

            if not progress:
                raise InfeasibleError(f"can't round to {total}, {missing} units exceed the caps")

    elif missing < 0:
        candidates = sorted(keys, key=lambda key: (remainders[key], order[key]))
        while missing < 0:
            progress = False
            for key in candidates:
                if missing == 0:
                    break
                if result[key] <= 0:
                    continue
                result[key] -= 1
                missing += 1
                progress = True

            if not progress:
                raise InfeasibleError(f"can't round down to {total}")

    return result


def round_targets(targets, osd_tree, pg_size, pg_count, limit):
    """
    round fractional osd slot targets to integers.

    domain totals are rounded first, so no domain gets more slots than
    limit * pg_count, then the osds within each domain.
    every osd ends up within one slot of its target, and at most pg_count.
    """
    domains = sorted(osd_tree.keys())

    domain_targets = dict()
    domain_caps = dict()
    for domain in domains:
        devices = osd_tree[domain]
        domain_targets[domain] = sum(targets.get(osdid, 0.0) for osdid in devices)
        domain_caps[domain] = min(limit, len(devices)) * pg_count

    domain_counts = largest_remainder(domain_targets, pg_size * pg_count, domain_caps)

    counts = dict()
    for domain in domains:
        devices = sorted(osd_tree[domain].keys())
        osd_targets = {osdid: targets.get(osdid, 0.0) for osdid in devices}
        osd_caps = {osdid: pg_count for osdid in devices}
        counts.update(largest_remainder(osd_targets, domain_counts[domain], osd_caps))

    logging.debug(strlazy(lambda: "rounded osd slots: " + ", ".join(
        f"osd.{osdid}={counts[osdid]}({targets.get(osdid, 0.0):.2f})" for osdid in sorted(counts))))

    return counts


def _domain_use(pg_osds, domains):
    use = defaultdict(int)
    for osdid in pg_osds:
        if osdid is not None:
            use[domains[osdid]] += 1
    return use


def _pick_osd(pg_osds, remaining, domain_left, domains, limit, strict=True):
    """
    choose the osd for a free slot of a pg.

    prefer domains the pg doesn't use yet, then the domain with most
    slots left to fill, then the osd with most slots left.
    with strict, domains already holding `limit` replicas of this pg are skipped.
    """
    use = _domain_use(pg_osds, domains)

    best = None
    best_key = None
    for osdid, left in remaining.items():
        if left <= 0 or osdid in pg_osds:
            continue

        domain = domains[osdid]
        if strict and use[domain] >= limit:
            continue

        key = (use[domain], -domain_left[domain], -left, osdid)
        if best_key is None or key < best_key:
            best = osdid
            best_key = key

    return best


def _swap_fill(pgs, pgnum, pos, remaining, domain_left, domains, limit, strict=True):
    """
    fill pgs[pgnum][pos] when every osd with slots left is unusable for this pg:
    find another pg q holding an osd f that fits here, and give q an osd e
    with slots left instead. e may well be one of the osds pgnum already has.
    without strict, the failure domain limit is ignored for both pgs.
    returns the pg number q, or None if no swap was possible.
    """
    pg_osds = pgs[pgnum]
    use = _domain_use(pg_osds, domains)

    spare = sorted((osdid for osdid, left in remaining.items() if left > 0),
                   key=lambda osdid: (-remaining[osdid], osdid))

    for osd_e in spare:
        domain_e = domains[osd_e]
        for q, q_osds in enumerate(pgs):
            if q == pgnum or osd_e in q_osds:
                continue

            q_use = _domain_use(q_osds, domains)
            for qpos, osd_f in enumerate(q_osds):
                if osd_f is None or osd_f in pg_osds:
                    continue

                domain_f = domains[osd_f]
                if strict:
                    if use[domain_f] >= limit:
                        continue
                    if q_use[domain_e] - (1 if domain_f == domain_e else 0) >= limit:
                        continue

                logging.debug(f"pg {q}: osd.{osd_f} -> osd.{osd_e} to free it for pg {pgnum}")
                q_osds[qpos] = osd_e
                pg_osds[pos] = osd_f
                remaining[osd_e] -= 1
                domain_left[domain_e] -= 1
                return q

    return None


def _fill_pgs(pgs, remaining, osd_tree, limit):
    """
    fill all None slots in pgs (modified in place) from the remaining osd slot quota.
    pgs are processed in order, so the result is deterministic.

    returns the pg numbers where the failure domain limit had to be broken.
    """
    domains = osd_domains(osd_tree)

    domain_left = defaultdict(int)
    for osdid, left in remaining.items():
        domain_left[domains[osdid]] += left

    relaxed = set()

    for pgnum, pg_osds in enumerate(pgs):
        for pos in range(len(pg_osds)):
            if pg_osds[pos] is not None:
                continue

            osdid = _pick_osd(pg_osds, remaining, domain_left, domains, limit)

            if osdid is None:
                if _swap_fill(pgs, pgnum, pos, remaining, domain_left, domains, limit) is not None:
                    continue

                osdid = _pick_osd(pg_osds, remaining, domain_left, domains, limit, strict=False)
                if osdid is not None:
                    logging.warning(f"pg {pgnum}: no osd with free slots in an unused failure domain, "
                                    f"placing on osd.{osdid} in {domains[osdid]}")
                    relaxed.add(pgnum)

            if osdid is None:
                # all slots left are on osds the pg already uses
                q = _swap_fill(pgs, pgnum, pos, remaining, domain_left, domains, limit, strict=False)
                if q is None:
                    raise OptimizerError(f"pg {pgnum}: no osd with free slots can take a replica")
                logging.warning(f"pg {pgnum}: swapped with pg {q} ignoring the failure domain limit")
                relaxed.update(pg for pg in (pgnum, q)
                               if max(_domain_use(pgs[pg], domains).values()) > limit)
                continue

            pg_osds[pos] = osdid
            remaining[osdid] -= 1
            domain_left[domains[osdid]] -= 1

    return relaxed


def integerize(targets, pg_size, pg_count, osd_tree, limit=None):
    """
    convert fractional osd slot targets into a pg -> [osd, ...] assignment.

    each osd gets its rounded target count exactly; each pg gets pg_size
    distinct osds with at most `limit` of them per failure domain.
    """
    if limit is None:
        limit = domain_replica_limit(osd_tree, pg_size)

    counts = round_targets(targets, osd_tree, pg_size, pg_count, limit)

    pgs = [[None] * pg_size for _ in range(pg_count)]
    relaxed = _fill_pgs(pgs, dict(counts), osd_tree, limit)
    if relaxed:
        logging.warning(f"{len(relaxed)} pgs placed with broken failure domain limit")

    return pgs


def diff_pgs(prev_pgs, osd_tree, pg_size, pg_count, limit):
    """
    figure out which replicas of the previous assignment may stay.

    returns one list of pg_size entries per pg: the previous osd where it can
    stay, None where the replica has to be placed anew (osd removed, duplicate,
    too many replicas in one failure domain, or the pg had fewer replicas).
    """
    domains = osd_domains(osd_tree)

    ret = list()
    for pgnum in range(pg_count):
        prev = prev_pgs[pgnum] if pgnum < len(prev_pgs) else []

        slots = [None] * pg_size
        use = defaultdict(int)
        for pos, osdid in enumerate(prev[:pg_size]):
            domain = domains.get(osdid)
            if domain is None:
                # osd was removed
                continue
            if osdid in slots:
                continue
            if use[domain] >= limit:
                continue

            use[domain] += 1
            slots[pos] = osdid

        ret.append(slots)

    return ret


def reoptimize(prev_pgs, osd_tree, pg_size, pg_count, config: Optional[OptimizerConfig] = None):
    """
    recompute the placement after the osd tree changed.

    solve for the best balance first, then for the least movement that stays
    within config.imbalance_tolerance of that balance.
    pgs keep their osds while the osd exists and has slots left in its new
    target, in pg order. only the freed slots are placed anew.

    returns (int_pgs, fractional_targets)
    """
    if config is None:
        config = OptimizerConfig()

    # diff
    limit = domain_replica_limit(osd_tree, pg_size)
    keepable = diff_pgs(prev_pgs, osd_tree, pg_size, pg_count, limit)

    prev_counts = defaultdict(int)
    for slots in keepable:
        for osdid in slots:
            if osdid is not None:
                prev_counts[osdid] += 1

    lost = sum(len(prev_pgs[pgnum][:pg_size]) for pgnum in range(min(pg_count, len(prev_pgs))))
    lost -= sum(prev_counts.values())
    logging.info(f"{lost} previous replicas can't stay where they are")

    # target
    balance_lp = build_problem(osd_tree, pg_size, pg_count, config=config)
    solve_problem(balance_lp, config)
    best_imbalance = solved_imbalance(balance_lp)
    logging.info(f"best possible imbalance: {best_imbalance * 100:.3f}%")

    change_lp = build_problem(osd_tree, pg_size, pg_count,
                              prev_counts=dict(prev_counts),
                              imbalance_bound=best_imbalance + config.imbalance_tolerance,
                              config=config)
    targets, objective = solve_problem(change_lp, config)
    logging.info(f"change lp objective: {objective:.3f}, "
                 f"imbalance: {solved_imbalance(change_lp) * 100:.3f}%")

    # reassign
    counts = round_targets(targets, osd_tree, pg_size, pg_count, limit)
    remaining = dict(counts)

    pgs = list()
    for slots in keepable:
        pg_osds = list(slots)
        for pos, osdid in enumerate(pg_osds):
            if osdid is None:
                continue
            if remaining[osdid] > 0:
                remaining[osdid] -= 1
            else:
                # over the new quota, pgs later in order give up the osd
                pg_osds[pos] = None
        pgs.append(pg_osds)

    free_slots = sum(osdid is None for pg_osds in pgs for osdid in pg_osds)
    logging.info(f"placing {free_slots} replica slots anew")

    relaxed = _fill_pgs(pgs, remaining, osd_tree, limit)
    if relaxed:
        logging.warning(f"{len(relaxed)} pgs placed with broken failure domain limit")

    return pgs, targets


# ----------------------------------------------------------------------------
# statistics


def pg_missing_domains(pg_osds, domains, pg_size):
    """
    how many more distinct failure domains the pg would need
    to have each replica in its own domain.
    """
    pg_domains = {domains.get(osdid, f"osd.{osdid}") for osdid in pg_osds}
    return max(0, pg_size - len(pg_domains))


def collect_stats(int_pgs, osd_tree, pg_size, prev_pgs=None, infeasible=False):
    """
    gather movement, balance and space statistics of an assignment.

    space is measured in osd weight units: a pg can hold as much data
    as its fullest osd (relative to the weight) allows.
    """
    pg_count = len(int_pgs)
    domains = osd_domains(osd_tree)
    weights = osd_weights(osd_tree)
    ideal = ideal_slots(osd_tree, pg_size, pg_count)

    device_slots = {osdid: 0 for osdid in sorted(weights)}
    for pg_osds in int_pgs:
        for osdid in pg_osds:
            device_slots[osdid] = device_slots.get(osdid, 0) + 1

    device_utilization = dict()
    imbalance = 0.0
    for osdid in sorted(weights):
        if ideal[osdid] > 0:
            utilization = device_slots[osdid] / ideal[osdid]
        else:
            utilization = 0.0
        device_utilization[osdid] = utilization
        imbalance = max(imbalance, abs(utilization - 1))

    unplaced_pgs = [pgnum for pgnum, pg_osds in enumerate(int_pgs) if not pg_osds]
    placed_count = pg_count - len(unplaced_pgs)

    degraded_pgs = list()
    degraded_slots = 0
    for pgnum, pg_osds in enumerate(int_pgs):
        missing = pg_missing_domains(pg_osds, domains, pg_size)
        degraded_slots += missing
        if missing > 0 and pg_osds:
            degraded_pgs.append(pgnum)

    total_space = sum(weights.values())
    ideal_usable_space = total_space / pg_size

    # data per pg is limited by the osd which has the least weight per pg slot
    usable_space = 0.0
    if placed_count > 0:
        per_pg = min((weights[osdid] / slots
                      for osdid, slots in device_slots.items()
                      if slots > 0 and osdid in weights),
                     default=0.0)
        usable_space = per_pg * placed_count

    space_efficiency = usable_space / ideal_usable_space if ideal_usable_space > 0 else 0.0

    stats = {
        "pg_count": pg_count,
        "pg_size": pg_size,
        "total_slots": sum(device_slots.values()),
        "device_slots": device_slots,
        "device_ideal": ideal,
        "device_utilization": device_utilization,
        "imbalance": imbalance,
        "degraded": bool(degraded_pgs),
        "degraded_pgs": degraded_pgs,
        "degraded_slots": degraded_slots,
        "unplaced_pgs": len(unplaced_pgs),
        "infeasible": infeasible,
        "total_space": total_space,
        "usable_space": usable_space,
        "ideal_usable_space": ideal_usable_space,
        "space_efficiency": space_efficiency,
        "moved_pgs": 0,
        "moved_slots": 0,
        "moved_fraction": 0.0,
    }

    if prev_pgs is not None:
        moved_pgs = 0
        moved_slots = 0
        for pgnum in range(max(len(int_pgs), len(prev_pgs))):
            new = set(int_pgs[pgnum]) if pgnum < len(int_pgs) else set()
            old = set(prev_pgs[pgnum]) if pgnum < len(prev_pgs) else set()
            if new != old:
                moved_pgs += 1
                moved_slots += len(new - old)

        stats["moved_pgs"] = moved_pgs
        stats["moved_slots"] = moved_slots
        stats["moved_fraction"] = moved_pgs / pg_count if pg_count else 0.0

    return stats


# ----------------------------------------------------------------------------
# entry points


def _get_pg_size(options):
    pg_size = options.get("pg_size", 3)
    if not isinstance(pg_size, int) or isinstance(pg_size, bool) or pg_size < 1:
        raise ValueError(f"pg_size must be a positive integer, not {pg_size!r}")
    return pg_size


def _empty_result(osd_tree, pg_size, pg_count, prev_pgs, reason):
    logging.warning(f"no placement possible: {reason}")
    int_pgs = [[] for _ in range(pg_count)]
    stats = collect_stats(int_pgs, osd_tree, pg_size, prev_pgs=prev_pgs, infeasible=True)
    stats["reason"] = str(reason)
    return {
        "int_pgs": int_pgs,
        "targets": dict(),
        "stats": stats,
    }


def optimize_initial(options, config: Optional[OptimizerConfig] = None):
    """
    compute a pg placement from scratch.

    options: {"osd_tree": flat or nested tree, "pg_size": int, "pg_count": int}
    returns {"int_pgs": [[osd, ...], ...], "targets": {osd: float}, "stats": {...}}

    without any possible placement, int_pgs is a list of empty pgs
    and stats["infeasible"] is set.
    """
    if config is None:
        config = OptimizerConfig()

    osd_tree = normalize_osd_tree(options.get("osd_tree") or {}, options.get("max_level"))
    pg_size = _get_pg_size(options)
    pg_count = options.get("pg_count")
    if not isinstance(pg_count, int) or isinstance(pg_count, bool) or pg_count < 1:
        raise ValueError(f"pg_count must be a positive integer, not {pg_count!r}")

    logging.info(f"initial placement of {pg_count} pgs with size {pg_size} "
                 f"on {sum(len(devs) for devs in osd_tree.values())} osds in {len(osd_tree)} domains")

    try:
        limit = domain_replica_limit(osd_tree, pg_size)
        lp = build_problem(osd_tree, pg_size, pg_count, config=config)
        targets, objective = solve_problem(lp, config)
        logging.info(f"best imbalance: {objective * 100:.3f}%")
        int_pgs = integerize(targets, pg_size, pg_count, osd_tree, limit)

    except InfeasibleError as exc:
        return _empty_result(osd_tree, pg_size, pg_count, None, exc)

    return {
        "int_pgs": int_pgs,
        "targets": targets,
        "stats": collect_stats(int_pgs, osd_tree, pg_size),
    }


def optimize_change(options, config: Optional[OptimizerConfig] = None):
    """
    recompute a pg placement for a changed osd tree, moving as little as possible.

    options: {"prev_pgs": previous int_pgs, "osd_tree": ..., "pg_size": int,
              "pg_count": int (optional, defaults to the previous pg count)}
    returns the same structure as optimize_initial, with movement stats.
    """
    if config is None:
        config = OptimizerConfig()

    prev_pgs = normalize_pgs(options.get("prev_pgs"))
    if prev_pgs is None:
        raise ValueError("change optimization needs prev_pgs")

    osd_tree = normalize_osd_tree(options.get("osd_tree") or {}, options.get("max_level"))
    pg_size = _get_pg_size(options)
    pg_count = options.get("pg_count")
    if pg_count is None:
        pg_count = len(prev_pgs)
    if not isinstance(pg_count, int) or isinstance(pg_count, bool) or pg_count < 1:
        raise ValueError(f"pg_count must be a positive integer, not {pg_count!r}")

    logging.info(f"change placement of {pg_count} pgs with size {pg_size} "
                 f"on {sum(len(devs) for devs in osd_tree.values())} osds in {len(osd_tree)} domains")

    try:
        int_pgs, targets = reoptimize(prev_pgs, osd_tree, pg_size, pg_count, config)

    except InfeasibleError as exc:
        return _empty_result(osd_tree, pg_size, pg_count, prev_pgs, exc)

    stats = collect_stats(int_pgs, osd_tree, pg_size, prev_pgs=prev_pgs)
    logging.info(f"moved {stats['moved_pgs']} pgs ({stats['moved_slots']} replicas)")

    return {
        "int_pgs": int_pgs,
        "targets": targets,
        "stats": stats,
    }


def optimize(options, config: Optional[OptimizerConfig] = None):
    """
    optimize_change if options has prev_pgs, else optimize_initial.
    """
    if options.get("prev_pgs") is not None:
        return optimize_change(options, config)
    return optimize_initial(options, config)


# ----------------------------------------------------------------------------
# reporting


def print_change_stats(result, show_osds=False):
    stats = result["stats"]

    if stats["infeasible"]:
        print(f"no placement possible: {stats.get('reason', 'insufficient capacity')}")

    if stats["moved_pgs"]:
        print(f"data movement: {stats['moved_pgs']} pgs, "
              f"{stats['moved_pgs']} / {stats['pg_count']} = {stats['moved_fraction'] * 100:.2f}%, "
              f"{stats['moved_slots']} replicas")
    else:
        print("data movement: none")

    print(f"total space (raw): {stats['total_space']:.2f}, "
          f"usable: {stats['usable_space']:.2f} / {stats['ideal_usable_space']:.2f}, "
          f"space efficiency: {stats['space_efficiency'] * 100:.2f}%")

    if stats["degraded_pgs"]:
        print(f"degraded: {len(stats['degraded_pgs'])} pgs without full failure domain separation, "
              f"{stats['degraded_slots']} replicas share a domain")

    if show_osds:
        print(f"{'osd': >8} {'pgs': >5} {'ideal': >8} {'util': >8}")
        for osdid, slots in stats["device_slots"].items():
            osd_ideal = stats["device_ideal"].get(osdid, 0.0)
            utilization = stats["device_utilization"].get(osdid, 0.0)
            print(f"{'osd.%s' % osdid: >8} {slots: >5} {osd_ideal: >8.2f} {utilization * 100: >7.2f}%")


def print_json_stats(result):
    stats = dict(result["stats"])
    # json keys have to be strings
    for key in ("device_slots", "device_ideal", "device_utilization"):
        stats[key] = {str(osdid): value for osdid, value in stats[key].items()}
    print(json.dumps(stats, indent=2))


def main():
    args = parse_args()

    log_setup(args.verbose - args.quiet)

    config = OptimizerConfig(
        imbalance_tolerance=args.imbalance_tolerance,
        movement_weight=args.movement_weight,
        time_limit=args.time_limit,
        gap_rel=args.gap_rel,
    )

    osd_tree = normalize_osd_tree(load_json(args.tree), args.max_level)

    if args.mode == 'flatten':
        flat = {domain: {str(osdid): weight for osdid, weight in devices.items()}
                for domain, devices in osd_tree.items()}
        if args.output:
            save_json(args.output, flat)
        else:
            print(json.dumps(flat, indent=2))
        return

    if args.mode == 'initial':
        result = optimize_initial({
            "osd_tree": osd_tree,
            "pg_size": args.pg_size,
            "pg_count": args.pg_count,
        }, config)

    elif args.mode == 'change':
        result = optimize_change({
            "osd_tree": osd_tree,
            "prev_pgs": load_json(args.prev),
            "pg_size": args.pg_size,
            "pg_count": args.pg_count,
        }, config)

    elif args.mode == 'stats':
        int_pgs = normalize_pgs(load_json(args.assignment))
        prev_pgs = normalize_pgs(load_json(args.prev)) if args.prev else None
        result = {
            "int_pgs": int_pgs,
            "stats": collect_stats(int_pgs, osd_tree, args.pg_size, prev_pgs=prev_pgs),
        }

    else:
        raise Exception(f"unknown mode: {args.mode}")

    if args.mode != 'stats' and args.output:
        save_json(args.output, result["int_pgs"])

    if args.format == 'json':
        print_json_stats(result)
    else:
        print_change_stats(result, args.osds)


if __name__ == "__main__":
    main()
