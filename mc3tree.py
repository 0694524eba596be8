"""Metropolis-coupled MCMC (MC3) sampling of phylogenetic trees, with tree and Newick machinery"""
# mc3tree developers
# Bayesian phylogenetics by Metropolis-coupled MCMC
# Distributed under the GNU General Public License v3 or later
import argparse
import copy
import logging
import math
import random
import re
import sys
from collections import Counter
import numpy as np
from scipy import special, stats

__version__ = "1.0.0"
PROGRAM_NAME = "mc3tree"

logger = logging.getLogger(__name__)

###################################################################################################
###################################################################################################
##
##  Implementation notes:
##        (1) Trees are stored as arenas: Tree.nodes is a list of Node objects, and all links
##            between nodes (parent, left child, right sibling) are indices into that list.
##            The preorder cache (Tree.preorder) is always rebuilt from scratch after any
##            structural change, never patched.
##
##        (2) All chains share a single Lot (pseudorandom source). The total order of random
##            draws (chain updates first, in chain order, then the swap proposal) is therefore
##            fixed for a given seed, and chains must not be advanced in parallel.
##
##        (3) Heating is applied to the full log-kernel (log-likelihood + log-prior), both in
##            the within-chain updaters and in the swap acceptance ratio.
##
###################################################################################################
###################################################################################################

###################################################################################################
###################################################################################################
#
# Various functions used by methods, that do not fit neatly in any class
###################################################################################################

def remove_comments(text):
    """Takes input string and strips away commented text, delimited by '[' and ']'.
        Also deals with nested comments."""

    if "[" not in text:
        return text
    elif text.count("[") != text.count("]"):
        raise ConfigurationError("String contains different number of left and right comment delimiters")

    # Sorted list of (position, kind) for every delimiter. Nesting tracked by depth counter
    delimlist = [(match.start(), "start") for match in re.finditer(r"\[", text)]
    delimlist.extend([(match.start(), "stop") for match in re.finditer(r"\]", text)])
    delimlist.sort()

    depth = 0
    prevpos = 0
    kept_parts = []
    for (pos, kind) in delimlist:
        if kind == "start":
            depth += 1
            if depth == 1:
                kept_parts.append(text[prevpos:pos])
        else:
            depth -= 1
            if depth == 0:
                prevpos = pos + 1
            elif depth == -1:
                raise ConfigurationError("Unmatched end-comment delimiter. Context: '{}'".format(text[prevpos-10:prevpos+10]))

    if prevpos < len(text):
        kept_parts.append(text[prevpos:])
    return "".join(kept_parts)

###################################################################################################

def calc_heating_powers(nchains, heating_lambda):
    """Returns list of heating powers, one per chain: power_i = 1 / (1 + heating_lambda * i)

    Chain 0 always gets power 1.0 (the cold chain). For heating_lambda = 0.2:
        chain_index  power
             0       1.000 = 1/(1 + 0.2*0)
             1       0.833 = 1/(1 + 0.2*1)
             2       0.714 = 1/(1 + 0.2*2)
             3       0.625 = 1/(1 + 0.2*3)
    """

    if nchains < 1:
        raise ConfigurationError("nchains must be a positive integer greater than 0")
    if not 0.0 < heating_lambda <= 1.0:
        raise ConfigurationError("heatfactor must be a real number in the interval (0.0,1.0]")
    return [1.0 / (1.0 + heating_lambda * i) for i in range(nchains)]

###################################################################################################

def _quote_name(name):
    """Quote taxon name for NEXUS output if it contains blanks or punctuation"""
    if re.search(r"[\s,;:()\[\]']", name):
        return "'{}'".format(name.replace("'", "''"))
    return name

###################################################################################################
###################################################################################################

class ConfigurationError(Exception):
    """Invalid user input: options, data file or tree file. Reported once, then the run ends"""
    pass

class TreeError(ConfigurationError):
    pass

class DataError(ConfigurationError):
    pass

class InvariantError(Exception):
    """Internal bookkeeping is inconsistent (a programming defect). Never caught by this module"""
    pass

###################################################################################################
###################################################################################################

class RunResult:
    """Outcome of option processing or of a complete run.

    success: False only for configuration errors
    message: text for the user (help, version, or error description)
    options: validated Options object, or None when there is nothing to run"""

    def __init__(self, success, message="", options=None):
        self.success = success
        self.message = message
        self.options = options

    def __repr__(self):
        return f"RunResult(success={self.success}, message={self.message!r})"

###################################################################################################
###################################################################################################

class Node:
    """One vertex in a Tree. parent, left_child and right_sib are indices into Tree.nodes"""

    __slots__ = ["number", "name", "edge_length", "parent", "left_child", "right_sib"]

    def __init__(self, number=-1, name="", edge_length=0.0):
        self.number = number
        self.name = name
        self.edge_length = edge_length
        self.parent = None
        self.left_child = None
        self.right_sib = None

    def __repr__(self):
        return f"Node(number={self.number}, name={self.name!r}, edge_length={self.edge_length})"

###################################################################################################
###################################################################################################

class NewickStringParser:
    """Parses Newick tree string into flat per-node lists. Used by Tree.from_newick.

    Result of parse() is (names, parents, lengths, children), indexed by temporary node id
    in order of appearance. Leaves have a name, internal nodes have name None."""

    def __init__(self):
        self.delimset = set(",:;()")
        self.regex = re.compile(r"([,:;()])")

        # Dispatch dictionary:
        # Key = current state and token-type
        # Value = (handler run with token-value, state we move to after this step)
        self.dispatch = {
            "TREE_START":       {   "(":        (self._handle_add_intnode,      "INTNODE_START")    },
            "INTNODE_START":    {   "(":        (self._handle_add_intnode,      "INTNODE_START"),
                                    "NUM_NAME": (self._handle_add_leaf,         "LEAF")             },
            "LEAF":             {   ":":        (self._handle_skip,             "EXPECTING_BRLEN"),
                                    ",":        (self._handle_close_node,       "EXPECTING_CHILD"),
                                    ")":        (self._handle_close_node,       "INTNODE_END")      },
            "EXPECTING_BRLEN":  {   "NUM_NAME": (self._handle_add_brlen,        "BRLEN")            },
            "BRLEN":            {   ",":        (self._handle_close_node,       "EXPECTING_CHILD"),
                                    ")":        (self._handle_close_node,       "INTNODE_END"),
                                    ";":        (self._handle_close_node,       "TREE_END")         },
            "EXPECTING_CHILD":  {   "(":        (self._handle_add_intnode,      "INTNODE_START"),
                                    "NUM_NAME": (self._handle_add_leaf,         "LEAF")             },
            "INTNODE_END":      {   ")":        (self._handle_close_node,       "INTNODE_END"),
                                    ",":        (self._handle_close_node,       "EXPECTING_CHILD"),
                                    ":":        (self._handle_skip,             "EXPECTING_BRLEN"),
                                    "NUM_NAME": (self._handle_skip,             "LABEL"),
                                    ";":        (self._handle_close_node,       "TREE_END")         },
            "LABEL":            {   ")":        (self._handle_close_node,       "INTNODE_END"),
                                    ",":        (self._handle_close_node,       "EXPECTING_CHILD"),
                                    ":":        (self._handle_skip,             "EXPECTING_BRLEN"),
                                    ";":        (self._handle_close_node,       "TREE_END")         }
        }

    ###############################################################################################

    def parse(self, treestring):
        # Values reset for each treestring
        self.names = []
        self.parents = []
        self.lengths = []
        self.children = []
        self.node_stack = []

        treestring = "".join(remove_comments(treestring).split())
        if not treestring.endswith(";"):
            treestring += ";"
        self.treestring = treestring
        dispatch = self.dispatch
        state = "TREE_START"
        for token_value in self.regex.split(treestring):
            if token_value:
                token_type = token_value if token_value in self.delimset else "NUM_NAME"
                try:
                    handler, state = dispatch[state][token_type]
                except KeyError:
                    self._handle_parse_error(state, token_value, token_type, treestring)
                handler(token_value)

        if state != "TREE_END" or self.node_stack:
            self._handle_parse_error(state, "", "END", treestring)

        return self.names, self.parents, self.lengths, self.children

    ###############################################################################################

    def _handle_parse_error(self, state, token_value, token_type, treestring):
        if treestring.count("(") != treestring.count(")"):
            msg = "Imbalance in tree-string: different number of left- and right-parentheses\n"
            msg += f"Left: ({treestring.count('(')}  Right: {treestring.count(')')})"
            raise TreeError(msg)
        msg = ("Parsing error: unexpected token-type for this state:\n"
               f"Parser state: {state}\n"
               f"Token_type:   {token_type}\n"
               f"Token-value:  {token_value}\n"
               f"Tree-string:  {treestring}\n")
        raise TreeError(msg)

    ###############################################################################################

    def _add_node(self, name):
        nodeid = len(self.names)
        parent = self.node_stack[-1] if self.node_stack else None
        self.names.append(name)
        self.parents.append(parent)
        self.lengths.append(0.0)
        self.children.append([])
        if parent is not None:
            self.children[parent].append(nodeid)
        self.node_stack.append(nodeid)

    ###############################################################################################

    def _handle_add_intnode(self, token_value):
        self._add_node(None)

    ###############################################################################################

    def _handle_add_leaf(self, name):
        self._add_node(sys.intern(name.strip("'\"")))

    ###############################################################################################

    def _handle_add_brlen(self, brlen_string):
        try:
            self.lengths[self.node_stack[-1]] = float(brlen_string)
        except ValueError:
            raise TreeError(f"Expected branch length: {brlen_string}")

    ###############################################################################################

    def _handle_close_node(self, token_value):
        if not self.node_stack:
            self._handle_parse_error("TREE_END", token_value, token_value, self.treestring)
        self.node_stack.pop()

    ###############################################################################################

    def _handle_skip(self, token_value):
        pass

###################################################################################################
###################################################################################################

class Tree:
    """Phylogenetic tree stored as an arena of Node objects.

    nodes:      list of Node objects, owned by the tree
    root:       index of root node
    is_rooted:  False means the root is itself a leaf (leaf number 0) with a single child
    nleaves:    number of leaves (taxa), including a leaf that serves as root
    preorder:   node indices in preorder, root excluded. Rebuilt by refresh_preorder()"""

    min_edge_length = 1.0e-12

    def __init__(self):
        self.nodes = []
        self.root = None
        self.is_rooted = False
        self.nleaves = 0
        self.preorder = []

    ###############################################################################################

    @classmethod
    def create_test_tree(cls):
        r"""Constructor: small rooted test tree. Numbers in parentheses are node numbers,
        other numbers are edge lengths:

            first_leaf (0)   second_leaf (1)   third_leaf (2)
                 \              /                  /
                  \ 0.1        / 0.1              /
                   \          /                  /
                second_internal (3)             / 0.2
                        \                      /
                         \ 0.1                /
                          \                  /
                           first_internal (4)
                                   |
                                   | 0.1
                                   |
                               root_node (5)
        """

        tree = cls()
        tree.nodes = [Node(5, "root node", 0.0),
                      Node(4, "first internal node", 0.1),
                      Node(3, "second internal node", 0.1),
                      Node(0, "first leaf", 0.1),
                      Node(1, "second leaf", 0.1),
                      Node(2, "third leaf", 0.2)]
        tree.root = 0
        tree.is_rooted = True
        tree.nleaves = 3
        tree._add_child(0, 1)
        tree._add_child(1, 2)
        tree._add_child(2, 3)
        tree._add_child(2, 4)
        tree._add_child(1, 5)
        tree.refresh_preorder()
        return tree

    ###############################################################################################

    @classmethod
    def from_newick(cls, newick, rooted=False, taxon_names=None, translate=None):
        """Constructor: Tree object from Newick string.

        Leaf names are mapped through translate (if given), then numbered by position in
        taxon_names (if given). Otherwise all-numeric names n get number n-1, and other
        names are numbered in sorted order.
        rooted=True:  a degree-1 root node is placed below the top node of the Newick string
        rooted=False: a degree-2 top node is removed, and the tree is rooted at leaf 0
        Missing or zero edge lengths are set to Tree.min_edge_length"""

        names, parents, lengths, _ = NewickStringParser().parse(newick)
        leafids = [nodeid for nodeid, name in enumerate(names) if name is not None]
        leafnumbers = cls._number_leaves([names[i] for i in leafids], taxon_names, translate)
        number_of = dict(zip(leafids, leafnumbers))

        # Undirected adjacency lists of [neighbour, edge length]. Parent comes first
        adjacency = [[] for _ in names]
        for nodeid, parent in enumerate(parents):
            if parent is not None:
                adjacency[nodeid].append([parent, lengths[nodeid]])
                adjacency[parent].append([nodeid, lengths[nodeid]])

        if rooted:
            start = 0
        else:
            top = 0
            if len(adjacency[top]) == 2:
                (node_a, len_a), (node_b, len_b) = adjacency[top]
                cls._replace_neighbour(adjacency[node_a], top, node_b, len_a + len_b)
                cls._replace_neighbour(adjacency[node_b], top, node_a, len_a + len_b)
                adjacency[top] = []
            start = leafids[leafnumbers.index(0)]

        tree = cls()
        tree.is_rooted = rooted
        tree.nleaves = len(leafids)
        if rooted:
            tree.nodes.append(Node(name="root"))
            tree.root = 0
            stack = [(start, None, 0.0, 0)]
        else:
            stack = [(start, None, 0.0, None)]

        # Orient edges away from start node. Stack entries: (tmp id, tmp parent, length, arena parent)
        next_intnode_number = tree.nleaves
        while stack:
            nodeid, tmp_parent, length, parent_index = stack.pop()
            nbrs = [nbr for nbr in adjacency[nodeid] if nbr[0] != tmp_parent]
            if nodeid in number_of:
                number = number_of[nodeid]
            elif nbrs:
                number = next_intnode_number
                next_intnode_number += 1
            else:
                raise TreeError(f"Internal node without descendants in tree string: {newick}")
            index = len(tree.nodes)
            tree.nodes.append(Node(number, names[nodeid] or "", length))
            if parent_index is None:
                tree.root = index
            else:
                # Edges below the root must stay positive so multiplier proposals can move them
                tree.nodes[index].edge_length = max(length, cls.min_edge_length)
                tree._add_child(parent_index, index)
            for nbr, nbrlen in reversed(nbrs):
                stack.append((nbr, nodeid, nbrlen, index))

        if rooted:
            tree.nodes[0].number = next_intnode_number
        tree.refresh_preorder()
        return tree

    ###############################################################################################

    @staticmethod
    def _number_leaves(leafnames, taxon_names, translate):
        """Returns list of leaf numbers (0-based) matching leafnames"""

        if translate:
            leafnames = [translate.get(name, name) for name in leafnames]
        if len(set(leafnames)) != len(leafnames):
            dups = sorted(name for name, count in Counter(leafnames).items() if count > 1)
            raise TreeError(f"Duplicated leafnames in treestring: {dups}")

        if taxon_names is not None:
            name2index = {name: i for i, name in enumerate(taxon_names)}
            try:
                numbers = [name2index[name] for name in leafnames]
            except KeyError as err:
                raise TreeError(f"Leaf name not found among taxon names: {err.args[0]}") from err
        elif all(name.isdigit() for name in leafnames):
            numbers = [int(name) - 1 for name in leafnames]
        else:
            name2index = {name: i for i, name in enumerate(sorted(leafnames))}
            numbers = [name2index[name] for name in leafnames]

        if sorted(numbers) != list(range(len(numbers))):
            raise TreeError(f"Leaves must be numbered 1 to {len(numbers)} (one per taxon)")
        return numbers

    ###############################################################################################

    @staticmethod
    def _replace_neighbour(nbrlist, old, new, length):
        for entry in nbrlist:
            if entry[0] == old:
                entry[0] = new
                entry[1] = length

    ###############################################################################################

    def _add_child(self, parent, child):
        """Link child as the last child of parent"""
        self.nodes[child].parent = parent
        pnode = self.nodes[parent]
        if pnode.left_child is None:
            pnode.left_child = child
        else:
            sib = pnode.left_child
            while self.nodes[sib].right_sib is not None:
                sib = self.nodes[sib].right_sib
            self.nodes[sib].right_sib = child

    ###############################################################################################

    def refresh_preorder(self):
        """Rebuild preorder cache from linked structure (root excluded)"""

        self.preorder = []
        first = self.nodes[self.root].left_child
        stack = [first] if first is not None else []
        while stack:
            nd = stack.pop()
            self.preorder.append(nd)
            node = self.nodes[nd]
            if node.right_sib is not None:
                stack.append(node.right_sib)
            if node.left_child is not None:
                stack.append(node.left_child)

    ###############################################################################################

    def children(self, nd):
        """Generator of child indices of node nd, left to right"""
        child = self.nodes[nd].left_child
        while child is not None:
            yield child
            child = self.nodes[child].right_sib

    ###############################################################################################

    def copy(self):
        """Returns independent copy of tree"""
        return copy.deepcopy(self)

    ###############################################################################################

    def calc_tree_length(self):
        """Returns sum of edge lengths of all nodes in preorder (root excluded)"""

        treelength = 0.0
        for nd in self.preorder:
            treelength += self.nodes[nd].edge_length
        return treelength

    ###############################################################################################

    def scale_all_edge_lengths(self, factor):
        """Multiply all edge lengths by factor. Caller must ensure factor is positive"""

        for nd in self.preorder:
            self.nodes[nd].edge_length *= factor

    ###############################################################################################

    def make_newick(self, precision=5):
        """Returns Newick tree string (no terminating semicolon). Leaves written as number+1.

        Built with an explicit stack instead of recursion. For unrooted trees the root (a leaf)
        is written as the first tip inside the outermost parenthesis, using the edge length of
        the first internal node visited"""

        newick = []
        node_stack = []
        root_tip = None if self.is_rooted else self.nodes[self.root]
        for nd in self.preorder:
            node = self.nodes[nd]
            if node.left_child is not None:
                newick.append("(")
                node_stack.append(node)
                if root_tip is not None:
                    newick.append(f"{root_tip.number + 1}:{node.edge_length:.{precision}f},")
                    root_tip = None
            else:
                newick.append(f"{node.number + 1}:{node.edge_length:.{precision}f}")
                if node.right_sib is not None:
                    newick.append(",")
                else:
                    popped = node_stack[-1] if node_stack else None
                    while popped is not None and popped.right_sib is None:
                        node_stack.pop()
                        if node_stack:
                            newick.append(f"):{popped.edge_length:.{precision}f}")
                            popped = node_stack[-1]
                        else:
                            newick.append(")")
                            popped = None
                    if popped is not None:
                        node_stack.pop()
                        newick.append(f"):{popped.edge_length:.{precision}f},")

        return "".join(newick)

    ###############################################################################################

    def splits(self):
        """Returns frozenset of splits. Each split is frozenset of leaf numbers below an
        internal node. Trivial splits (fewer than 2 leaves on either side) are left out"""

        below = {}
        splitset = set()
        for nd in reversed(self.preorder):
            node = self.nodes[nd]
            if node.left_child is None:
                below[nd] = frozenset([node.number])
            else:
                leaves = frozenset().union(*(below[child] for child in self.children(nd)))
                below[nd] = leaves
                if 2 <= len(leaves) <= self.nleaves - 2:
                    splitset.add(leaves)
        return frozenset(splitset)

###################################################################################################
###################################################################################################

class TreeSummary:
    """Reads tree files (NEXUS or Newick) and summarises the distinct topologies in them"""

    def __init__(self):
        self.newicks = []
        self.translate = {}

    ###############################################################################################

    def clear(self):
        self.newicks = []
        self.translate = {}

    ###############################################################################################

    def read_treefile(self, filename=None, skip=0, filecontent=None):
        """Reads all tree strings in file, discarding the first 'skip' of them"""

        num_args = (filename is not None) + (filecontent is not None)
        if num_args != 1:
            raise TreeError("read_treefile requires either filename or filecontent (not both)")
        if filename is not None:
            try:
                with open(filename, mode="rt", encoding="UTF-8") as treefile:
                    filecontent = treefile.read()
            except OSError as err:
                raise TreeError(f"Could not read tree file: {err}") from err

        text = remove_comments(filecontent)
        newicks = []
        if text.lstrip().lower().startswith("#nexus"):
            block = re.search(r"begin\s+trees\s*;(.*?)\bend(block)?\s*;", text, re.IGNORECASE | re.DOTALL)
            if block is None:
                raise TreeError("No trees block found in NEXUS tree file")
            for statement in block.group(1).split(";"):
                statement = statement.strip()
                if re.match(r"translate\s", statement, re.IGNORECASE):
                    for code, name in re.findall(r"([^,\s]+)\s+('[^']*'|[^,\s]+)", statement[9:]):
                        self.translate[code] = sys.intern(name.strip("'"))
                else:
                    match = re.match(r"u?tree\s+(\*\s*)?[^=]+=\s*(.*)$", statement, re.IGNORECASE | re.DOTALL)
                    if match:
                        newicks.append(match.group(2))
        else:
            newicks = [statement.strip() for statement in text.split(";") if statement.strip()]

        self.newicks.extend(newicks[skip:])
        logger.debug("Read %d tree strings (skipped %d)", len(newicks[skip:]), skip)

    ###############################################################################################

    def get_newick(self, index):
        try:
            return self.newicks[index]
        except IndexError as err:
            raise TreeError(f"Tree index {index} not available: {len(self.newicks)} trees read") from err

    ###############################################################################################

    def topology_counts(self):
        """Returns Counter of split sets, and dict of first Newick string seen for each"""

        counts = Counter()
        first_seen = {}
        for newick in self.newicks:
            topology = Tree.from_newick(newick).splits()
            counts[topology] += 1
            first_seen.setdefault(topology, newick)
        return counts, first_seen

    ###############################################################################################

    def show_summary(self):
        """Returns summary of topologies as string, most frequent first"""

        counts, first_seen = self.topology_counts()
        ntrees = len(self.newicks)
        lines = [f"Read {ntrees} trees", f"Found {len(counts)} distinct topologies"]
        if ntrees > 0:
            lines.append(f"{'topology':>12s} {'count':>12s} {'proportion':>12s}  newick")
            for i, (topology, count) in enumerate(counts.most_common(), start=1):
                lines.append(f"{i:12d} {count:12d} {count / ntrees:12.5f}  {first_seen[topology]}")
        return "\n".join(lines)

###################################################################################################
###################################################################################################

class Data:
    """DNA alignment read from NEXUS data (or characters) block, compressed to site patterns.
    Each character is stored as a bitmask over the states A, C, G, T (ambiguities set several bits)"""

    statecodes = {"A": 1, "C": 2, "G": 4, "T": 8, "U": 8,
                  "M": 3, "R": 5, "W": 9, "S": 6, "Y": 10, "K": 12,
                  "V": 7, "H": 11, "D": 13, "B": 14,
                  "N": 15, "?": 15, "-": 15}

    def __init__(self):
        self.taxon_names = []
        self.nchar = 0
        self.patterns = None            # ntax x npatterns array of state bitmasks
        self.pattern_counts = None

    ###############################################################################################

    @classmethod
    def from_file(cls, filename=None, filecontent=None):
        """Constructor: Data object from NEXUS file (or string with file content)"""

        num_args = (filename is not None) + (filecontent is not None)
        if num_args != 1:
            raise DataError("Data.from_file requires either filename or filecontent (not both)")
        if filename is not None:
            try:
                with open(filename, mode="rt", encoding="UTF-8") as datafile:
                    filecontent = datafile.read()
            except OSError as err:
                raise DataError(f"Could not read data file: {err}") from err

        text = remove_comments(filecontent)
        if not text.lstrip().lower().startswith("#nexus"):
            raise DataError("File does not appear to be in NEXUS format")
        block = re.search(r"begin\s+(data|characters)\s*;(.*?)\bend(block)?\s*;", text, re.IGNORECASE | re.DOTALL)
        if block is None:
            raise DataError("No data or characters block found in NEXUS file")
        blocktext = block.group(2)

        ntax_match = re.search(r"ntax\s*=\s*(\d+)", blocktext, re.IGNORECASE)
        nchar_match = re.search(r"nchar\s*=\s*(\d+)", blocktext, re.IGNORECASE)
        matrix_match = re.search(r"\bmatrix\b(.*?);", blocktext, re.IGNORECASE | re.DOTALL)
        if nchar_match is None or matrix_match is None:
            raise DataError("Data block must contain dimensions (nchar) and a matrix")
        nchar = int(nchar_match.group(1))

        # Sequential or interleaved: lines of "name sequence", same name may occur repeatedly
        sequences = {}
        for line in matrix_match.group(1).splitlines():
            match = re.match(r"\s*('[^']*'|\S+)\s*(.*)$", line)
            if match is None:
                continue
            name = sys.intern(match.group(1).strip("'"))
            if name not in sequences:
                sequences[name] = []
            sequences[name].append("".join(match.group(2).split()).upper())

        data = cls()
        data.taxon_names = list(sequences.keys())
        data.nchar = nchar
        if ntax_match and int(ntax_match.group(1)) != len(data.taxon_names):
            raise DataError(f"Expected {ntax_match.group(1)} taxa in matrix, found {len(data.taxon_names)}")

        rows = []
        for name in data.taxon_names:
            seq = "".join(sequences[name])
            if len(seq) != nchar:
                raise DataError(f"Sequence for taxon {name} has {len(seq)} characters, expected {nchar}")
            try:
                rows.append([data.statecodes[char] for char in seq])
            except KeyError as err:
                raise DataError(f"Unrecognised character {err.args[0]!r} in sequence for taxon {name}") from err

        matrix = np.array(rows, dtype=np.uint8).reshape(len(rows), nchar)
        data.patterns, data.pattern_counts = np.unique(matrix, axis=1, return_counts=True)
        logger.debug("Read %d taxa, %d sites, %d distinct patterns",
                     len(data.taxon_names), nchar, data.npatterns)
        return data

    ###############################################################################################

    @property
    def ntax(self):
        return len(self.taxon_names)

    ###############################################################################################

    @property
    def npatterns(self):
        return self.patterns.shape[1]

    ###############################################################################################

    def tip_partials(self):
        """Returns array of shape (ntax, npatterns, 4): 1.0 where a state is compatible with data"""
        return ((self.patterns[:, :, np.newaxis] >> np.arange(4)) & 1).astype(float)

###################################################################################################
###################################################################################################

class GTRModel:
    """General time-reversible nucleotide substitution model with discrete-gamma rate heterogeneity.

    Exchangeabilities in the order AC AG AT CG CT GT, state frequencies in the order A C G T.
    Both are normalised to sum to 1. The rate matrix is scaled to one expected substitution per
    unit time. Transition probabilities use the eigen-decomposition of the symmetrised matrix"""

    exchangeability_names = ["AC", "AG", "AT", "CG", "CT", "GT"]
    state_names = ["A", "C", "G", "T"]

    def __init__(self):
        self.exchangeabilities = np.full(6, 1.0 / 6.0)
        self.state_freqs = np.full(4, 0.25)
        self.gamma_shape = 0.5
        self.gamma_ncateg = 1
        self._decompose()
        self._calc_category_rates()

    ###############################################################################################

    def set_exchangeabilities_and_state_freqs(self, exchangeabilities, state_freqs):
        xchg = np.asarray(exchangeabilities, dtype=float)
        freqs = np.asarray(state_freqs, dtype=float)
        if xchg.shape != (6,):
            raise ConfigurationError(f"rmatrix must have 6 entries (got {xchg.size})")
        if freqs.shape != (4,):
            raise ConfigurationError(f"statefreq must have 4 entries (got {freqs.size})")
        if np.any(xchg <= 0.0):
            raise ConfigurationError("all rmatrix entries must be positive real numbers")
        if np.any(freqs <= 0.0):
            raise ConfigurationError("all statefreq entries must be positive real numbers")
        self.exchangeabilities = xchg / xchg.sum()
        self.state_freqs = freqs / freqs.sum()
        self._decompose()

    ###############################################################################################

    def set_gamma_shape(self, shape):
        if shape <= 0.0:
            raise ConfigurationError("gamma shape must be a positive real number")
        self.gamma_shape = shape
        self._calc_category_rates()

    ###############################################################################################

    def set_gamma_ncateg(self, ncateg):
        if ncateg < 1:
            raise ConfigurationError("ncateg must be a positive integer greater than 0")
        self.gamma_ncateg = ncateg
        self._calc_category_rates()

    ###############################################################################################

    def _decompose(self):
        pi = self.state_freqs
        qmat = np.zeros((4, 4))
        qmat[np.triu_indices(4, k=1)] = self.exchangeabilities
        qmat = (qmat + qmat.T) * pi[np.newaxis, :]
        np.fill_diagonal(qmat, -qmat.sum(axis=1))
        qmat /= -np.dot(pi, np.diag(qmat))

        # S = D^1/2 Q D^-1/2 is symmetric, so Q = D^-1/2 V diag(eigenvalues) V' D^1/2
        sqrtpi = np.sqrt(pi)
        symm = sqrtpi[:, np.newaxis] * qmat / sqrtpi[np.newaxis, :]
        eigenvalues, eigenvectors = np.linalg.eigh(symm)
        self.qmatrix = qmat
        self.eigenvalues = eigenvalues
        self.left_eigenvectors = eigenvectors / sqrtpi[:, np.newaxis]
        self.right_eigenvectors = eigenvectors.T * sqrtpi[np.newaxis, :]

    ###############################################################################################

    def _calc_category_rates(self):
        """Mean rate within each of gamma_ncateg equal-probability categories of Gamma(shape, 1/shape)"""

        ncateg = self.gamma_ncateg
        if ncateg == 1:
            self.category_rates = np.ones(1)
            return
        shape = self.gamma_shape
        cutoffs = stats.gamma.ppf(np.arange(1, ncateg) / ncateg, a=shape, scale=1.0 / shape)
        upper = np.append(special.gammainc(shape + 1.0, cutoffs * shape), 1.0)
        lower = np.insert(upper[:-1], 0, 0.0)
        self.category_rates = (upper - lower) * ncateg

    ###############################################################################################

    def transition_matrices(self, edge_length):
        """Returns array (ncateg, 4, 4) of transition probabilities along edge, one per rate category"""

        expterms = np.exp(np.outer(self.category_rates * edge_length, self.eigenvalues))
        pmats = np.einsum("ik,ck,kj->cij", self.left_eigenvectors, expterms, self.right_eigenvectors)
        return np.clip(pmats, 0.0, None)

    ###############################################################################################

    def describe(self):
        lines = ["Model description:"]
        lines.append("  exchangeabilities: " + " ".join(
            f"{name}={value:.5f}" for name, value in zip(self.exchangeability_names, self.exchangeabilities)))
        lines.append("  state frequencies: " + " ".join(
            f"{name}={value:.5f}" for name, value in zip(self.state_names, self.state_freqs)))
        if self.gamma_ncateg > 1:
            lines.append(f"  gamma shape: {self.gamma_shape:.5f}")
            lines.append(f"  gamma categories: {self.gamma_ncateg}")
            lines.append("  category rates: " + " ".join(f"{rate:.5f}" for rate in self.category_rates))
        else:
            lines.append("  no rate heterogeneity (1 category)")
        return "\n".join(lines)

    ###############################################################################################

    def param_names(self):
        names = [f"r{name}" for name in self.exchangeability_names]
        names.extend(f"pi{name}" for name in self.state_names)
        names.append("shape")
        return names

    ###############################################################################################

    def param_values(self):
        values = list(self.exchangeabilities)
        values.extend(self.state_freqs)
        values.append(self.gamma_shape)
        return values

###################################################################################################
###################################################################################################

class Likelihood:
    """Log-likelihood of a tree under a GTRModel (Felsenstein pruning).
    Shared by all chains: reads data and model, never modifies them"""

    def __init__(self, data, model):
        self.data = data
        self.model = model
        self.tip_partials = data.tip_partials()
        self.pattern_counts = data.pattern_counts.astype(float)

    ###############################################################################################

    def calc_log_likelihood(self, tree):
        if tree.nleaves != self.data.ntax:
            raise TreeError(f"Tree has {tree.nleaves} leaves, but data has {self.data.ntax} taxa")

        model = self.model
        ncateg = model.gamma_ncateg
        npatterns = self.data.npatterns
        log_scale = np.zeros(npatterns)
        partials = {}

        # Postorder: reversed preorder, then root. Nodes numbered below nleaves carry data
        for nd in list(reversed(tree.preorder)) + [tree.root]:
            node = tree.nodes[nd]
            if node.number < tree.nleaves:
                partial = np.tile(self.tip_partials[node.number], (ncateg, 1, 1))
            else:
                partial = np.ones((ncateg, npatterns, 4))
            if node.left_child is not None:
                for child in tree.children(nd):
                    pmats = model.transition_matrices(tree.nodes[child].edge_length)
                    partial *= np.einsum("cxy,cpy->cpx", pmats, partials.pop(child))
                # Rescale per pattern to avoid underflow
                scaler = partial.max(axis=(0, 2))
                scaler[scaler == 0.0] = 1.0
                partial /= scaler[np.newaxis, :, np.newaxis]
                log_scale += np.log(scaler)
            partials[nd] = partial

        site_likelihoods = np.einsum("x,cpx->p", model.state_freqs, partials[tree.root]) / ncateg
        with np.errstate(divide="ignore"):
            return float(np.dot(self.pattern_counts, np.log(site_likelihoods) + log_scale))

###################################################################################################
###################################################################################################

class Lot:
    """Source of pseudorandom numbers shared by all chains. Always seeded explicitly"""

    def __init__(self, seed=1):
        self.rng = random.Random()
        self.set_seed(seed)

    ###############################################################################################

    def set_seed(self, seed):
        self.seed = seed
        self.rng.seed(seed)

    ###############################################################################################

    def uniform(self):
        """Returns uniform deviate from the open interval (0, 1)"""
        u = self.rng.random()
        while u == 0.0:
            u = self.rng.random()
        return u

    ###############################################################################################

    def randint(self, low, high):
        """Returns integer uniformly from [low, high], both inclusive"""
        return self.rng.randint(low, high)

    ###############################################################################################

    def log_uniform(self):
        return math.log(self.uniform())

###################################################################################################
###################################################################################################

class Updater:
    """Base class for Metropolis-Hastings updaters acting on the tree of a Chain.

    Subclasses implement propose(tree, lot) (modify tree, return log Hastings ratio)
    and revert(tree) (undo last proposal). Proposals are multipliers m = exp(lambda*(u-0.5));
    lambda is adapted towards target_acceptance while tuning is on."""

    name = "Updater"
    min_lambda = 1.0e-6
    max_lambda = 1000.0

    def __init__(self, lambda_=1.0, target_acceptance=0.3):
        self.lambda_ = lambda_
        self.target_acceptance = target_acceptance
        self.tuning = True
        self.nattempts = 0
        self.nsampled = 0
        self.nsampled_accepts = 0

    ###############################################################################################

    def multiplier(self, lot):
        return math.exp(self.lambda_ * (lot.uniform() - 0.5))

    ###############################################################################################

    def update(self, chain, record=False):
        """Propose, then accept or reject using heated log-kernel. Returns True if accepted.
        If record is True the outcome is counted in the sampling-phase acceptance rate"""

        log_hastings = self.propose(chain.tree, chain.lot)
        log_likelihood = chain.likelihood.calc_log_likelihood(chain.tree)
        log_prior = chain.calc_log_joint_prior()
        log_ratio = (chain.heating_power
                     * (log_likelihood + log_prior - chain.log_likelihood - chain.log_prior)
                     + log_hastings)

        accepted = chain.lot.log_uniform() < log_ratio
        if accepted:
            chain.log_likelihood = log_likelihood
            chain.log_prior = log_prior
        else:
            self.revert(chain.tree)
        if record:
            self.nsampled += 1
            self.nsampled_accepts += accepted
        self.tune(accepted)
        return accepted

    ###############################################################################################

    def tune(self, accepted):
        self.nattempts += 1
        if self.tuning:
            gamma_n = 10.0 / (100.0 + self.nattempts)
            if accepted:
                self.lambda_ *= 1.0 + gamma_n * (1.0 - self.target_acceptance) / (2.0 * self.target_acceptance)
            else:
                self.lambda_ *= 1.0 - gamma_n * 0.5
            self.lambda_ = min(max(self.lambda_, self.min_lambda), self.max_lambda)

    ###############################################################################################

    def acceptance_rate(self):
        """Fraction of accepted proposals during sampling phase (None if none recorded)"""
        if self.nsampled == 0:
            return None
        return self.nsampled_accepts / self.nsampled

###################################################################################################

class EdgeLengthUpdater(Updater):
    """Rescales the length of one randomly chosen edge"""

    name = "Edge length"

    def propose(self, tree, lot):
        self.node = tree.preorder[lot.randint(0, len(tree.preorder) - 1)]
        m = self.multiplier(lot)
        self.prev_length = tree.nodes[self.node].edge_length
        tree.nodes[self.node].edge_length = self.prev_length * m
        return math.log(m)

    def revert(self, tree):
        tree.nodes[self.node].edge_length = self.prev_length

###################################################################################################

class TreeLengthUpdater(Updater):
    """Rescales all edge lengths by a common factor"""

    name = "Tree length"

    def __init__(self, lambda_=0.2, target_acceptance=0.3):
        Updater.__init__(self, lambda_, target_acceptance)

    def propose(self, tree, lot):
        self.prev_lengths = [tree.nodes[nd].edge_length for nd in tree.preorder]
        m = self.multiplier(lot)
        tree.scale_all_edge_lengths(m)
        # Zero-length edges are unchanged by scaling and do not count in the Jacobian
        nscaled = sum(1 for length in self.prev_lengths if length > 0.0)
        return nscaled * math.log(m)

    def revert(self, tree):
        for nd, length in zip(tree.preorder, self.prev_lengths):
            tree.nodes[nd].edge_length = length

###################################################################################################
###################################################################################################

class Chain:
    """One member of an MC3 ensemble.

    Owns its tree and its updaters. Borrows the Likelihood (and through it the model)
    and the Lot, which are shared with all other chains.
    Lifecycle: created -> started -> stopped. Stepping is only allowed while started."""

    CREATED = "created"
    STARTED = "started"
    STOPPED = "stopped"

    def __init__(self, tree, likelihood, lot, heating_power=1.0, edgelen_rate=10.0):
        self.tree = tree
        self.likelihood = likelihood
        self.lot = lot
        self.edgelen_rate = edgelen_rate
        self.heating_power = heating_power
        self.updaters = [EdgeLengthUpdater(), TreeLengthUpdater()]
        self.log_likelihood = None
        self.log_prior = None
        self.state = Chain.CREATED

    ###############################################################################################

    @property
    def heating_power(self):
        return self._heating_power

    @heating_power.setter
    def heating_power(self, power):
        if not 0.0 < power <= 1.0:
            raise InvariantError(f"Heating power must be in the interval (0.0,1.0]: {power}")
        self._heating_power = power

    ###############################################################################################

    def start_tuning(self):
        for updater in self.updaters:
            updater.tuning = True

    ###############################################################################################

    def stop_tuning(self):
        for updater in self.updaters:
            updater.tuning = False

    ###############################################################################################

    def get_tuning_values(self):
        """Returns dict of updater name: lambda"""
        return {updater.name: updater.lambda_ for updater in self.updaters}

    ###############################################################################################

    def set_tuning_values(self, values):
        for updater in self.updaters:
            updater.lambda_ = values[updater.name]

    ###############################################################################################

    def calc_log_likelihood(self):
        return self.likelihood.calc_log_likelihood(self.tree)

    ###############################################################################################

    def calc_log_joint_prior(self):
        """Independent exponential priors (rate edgelen_rate) on all edge lengths"""
        nedges = len(self.tree.preorder)
        return nedges * math.log(self.edgelen_rate) - self.edgelen_rate * self.tree.calc_tree_length()

    ###############################################################################################

    def start(self):
        if self.state != Chain.CREATED:
            raise InvariantError(f"Chain can only be started once (state is {self.state})")
        self.log_likelihood = self.calc_log_likelihood()
        self.log_prior = self.calc_log_joint_prior()
        self.state = Chain.STARTED
        logger.debug("Started chain with power %.5f: logL=%.5f logPrior=%.5f",
                     self.heating_power, self.log_likelihood, self.log_prior)

    ###############################################################################################

    def stop(self):
        if self.state != Chain.STARTED:
            raise InvariantError(f"Only a started chain can be stopped (state is {self.state})")
        self.state = Chain.STOPPED
        logger.debug("Stopped chain with power %.5f", self.heating_power)

    ###############################################################################################

    def next_step(self, iteration, samplefreq):
        """One sweep through all updaters. samplefreq == 0 means burn-in (nothing recorded)"""

        if self.state != Chain.STARTED:
            raise InvariantError(f"Cannot step chain in state {self.state} (iteration {iteration})")
        record = samplefreq > 0
        for updater in self.updaters:
            updater.update(self, record)

###################################################################################################
###################################################################################################

class SwapStatistics:
    """n x n matrix of swap counts between chain indices.
    Upper triangle [min, max]: attempted swaps. Lower triangle [max, min]: accepted swaps."""

    def __init__(self, nchains):
        self.nchains = nchains
        self.counts = np.zeros((nchains, nchains), dtype=np.int64)

    ###############################################################################################

    def reset(self):
        self.counts[:, :] = 0

    ###############################################################################################

    def record_attempt(self, i, j):
        self.counts[min(i, j), max(i, j)] += 1

    ###############################################################################################

    def record_acceptance(self, i, j):
        self.counts[max(i, j), min(i, j)] += 1

    ###############################################################################################

    def attempted(self, i, j):
        return int(self.counts[min(i, j), max(i, j)])

    ###############################################################################################

    def accepted(self, i, j):
        return int(self.counts[max(i, j), min(i, j)])

    ###############################################################################################

    def total_attempted(self):
        return int(np.triu(self.counts, k=1).sum())

    ###############################################################################################

    def total_accepted(self):
        return int(np.tril(self.counts, k=-1).sum())

    ###############################################################################################

    def format_table(self):
        """Returns (n+1) x (n+1) table as string: chain indices as headers, '---' on diagonal"""

        n = self.nchains
        rule = "{:12s}".format("-" * 12) + "-{:12s}".format("-" * 12) * n
        lines = ["Swap summary (upper triangle = no. attempted swaps; lower triangle = no. successful swaps):"]
        lines.append("{:12s}".format(" ") + "".join(f" {i:12d}" for i in range(n)))
        lines.append(rule)
        for i in range(n):
            row = [f"{i:12d}"]
            for j in range(n):
                if i == j:
                    row.append(" {:>12s}".format("---"))
                else:
                    row.append(f" {self.counts[i, j]:12d}")
            lines.append("".join(row))
        lines.append(rule)
        return "\n".join(lines)

###################################################################################################
###################################################################################################

class SwapProposer:
    """Picks two chains at random and proposes to exchange their heating powers (and tuning values)"""

    def __init__(self, lot, swapstats):
        self.lot = lot
        self.swapstats = swapstats

    ###############################################################################################

    def select_pair(self, nchains):
        """Returns pair (i, j) of distinct chain indices.

        For nchains = 3:
             i  j  = (i + 1 + randint(0,1)) % 3
            ---------------------------------
             0  1  = (0 + 1 +      0      ) % 3
                2  = (0 + 1 +      1      ) % 3
             1  2  = (1 + 1 +      0      ) % 3
                0  = (1 + 1 +      1      ) % 3
             2  0  = (2 + 1 +      0      ) % 3
                1  = (2 + 1 +      1      ) % 3
        """

        i = self.lot.randint(0, nchains - 1)
        j = (i + 1 + self.lot.randint(0, nchains - 2)) % nchains
        if i == j or not (0 <= i < nchains and 0 <= j < nchains):
            raise InvariantError(f"Invalid chain pair selected for swap: ({i}, {j}) with {nchains} chains")
        return i, j

    ###############################################################################################

    @staticmethod
    def log_acceptance_ratio(heat_i, log_kernel_i, heat_j, log_kernel_j):
        """Log of R = (pj^a / pi^a) * (pi^b / pj^b) for chain i (power a, kernel pi)
        and chain j (power b, kernel pj): log R = (a - b) * (log pj - log pi)"""
        return (heat_i - heat_j) * (log_kernel_j - log_kernel_i)

    ###############################################################################################

    def propose(self, chains):
        """One swap proposal. Returns True (accepted), False (rejected), or None if only one chain"""

        nchains = len(chains)
        if nchains == 1:
            return None

        i, j = self.select_pair(nchains)
        self.swapstats.record_attempt(i, j)
        chain_i = chains[i]
        chain_j = chains[j]

        heat_i = chain_i.heating_power
        log_kernel_i = chain_i.calc_log_likelihood() + chain_i.calc_log_joint_prior()
        heat_j = chain_j.heating_power
        log_kernel_j = chain_j.calc_log_likelihood() + chain_j.calc_log_joint_prior()
        log_ratio = self.log_acceptance_ratio(heat_i, log_kernel_i, heat_j, log_kernel_j)

        if self.lot.log_uniform() < log_ratio:
            self.swapstats.record_acceptance(i, j)
            chain_i.heating_power = heat_j
            chain_j.heating_power = heat_i
            tuning_i = chain_i.get_tuning_values()
            tuning_j = chain_j.get_tuning_values()
            chain_i.set_tuning_values(tuning_j)
            chain_j.set_tuning_values(tuning_i)
            logger.debug("Swapped chains %d and %d (powers %.5f <-> %.5f)", i, j, heat_i, heat_j)
            return True
        return False

###################################################################################################
###################################################################################################

class ChainEnsemble:
    """Fixed-size set of heated chains, stepped in lock step with one swap proposal per iteration.

    Lifecycle: UNINITIALIZED -> TUNING (burn-in) -> FROZEN (sampling) -> STOPPED.
    Only the chain currently holding power 1.0 (the cold chain) is sampled."""

    UNINITIALIZED = "uninitialized"
    TUNING = "tuning"
    FROZEN = "frozen"
    STOPPED = "stopped"

    def __init__(self, nchains, heating_lambda, lot, likelihood, output_manager,
                 samplefreq=1, edgelen_rate=10.0):
        self.nchains = nchains
        self.heating_powers = calc_heating_powers(nchains, heating_lambda)
        self.lot = lot
        self.likelihood = likelihood
        self.output_manager = output_manager
        self.samplefreq = samplefreq
        self.edgelen_rate = edgelen_rate
        self.chains = []
        self.swapstats = SwapStatistics(nchains)
        self.swap_proposer = SwapProposer(lot, self.swapstats)
        self.state = ChainEnsemble.UNINITIALIZED

    ###############################################################################################

    def _require_state(self, action, *allowed):
        if self.state not in allowed:
            raise InvariantError(f"Cannot {action}: ensemble is {self.state}")

    ###############################################################################################

    def init_chains(self, starting_tree):
        """Create chains, each with its own copy of starting_tree, tuning on, and start them"""

        self._require_state("initialise chains", ChainEnsemble.UNINITIALIZED)
        for power in self.heating_powers:
            chain = Chain(starting_tree.copy(), self.likelihood, self.lot, power, self.edgelen_rate)
            chain.start_tuning()
            chain.start()
            self.chains.append(chain)
        self.state = ChainEnsemble.TUNING
        logger.info("Initialised %d chains with powers %s", self.nchains,
                    ", ".join(f"{power:.5f}" for power in self.heating_powers))

    ###############################################################################################

    def step_chains(self, iteration, sampling):
        if sampling:
            self._require_state("step chains with sampling", ChainEnsemble.FROZEN)
        else:
            self._require_state("step chains", ChainEnsemble.TUNING, ChainEnsemble.FROZEN)
        samplefreq = self.samplefreq if sampling else 0
        for chain in self.chains:
            chain.next_step(iteration, samplefreq)

    ###############################################################################################

    def swap_chains(self):
        self._require_state("swap chains", ChainEnsemble.TUNING, ChainEnsemble.FROZEN)
        return self.swap_proposer.propose(self.chains)

    ###############################################################################################

    def stop_tuning_chains(self):
        """End of burn-in: clear swap statistics and freeze updater tuning values"""

        self._require_state("stop tuning", ChainEnsemble.TUNING)
        self.swapstats.reset()
        for chain in self.chains:
            chain.stop_tuning()
        self.state = ChainEnsemble.FROZEN
        logger.info("Tuning stopped")

    ###############################################################################################

    def cold_chain(self):
        cold = [chain for chain in self.chains if chain.heating_power == 1.0]
        if len(cold) != 1:
            raise InvariantError(f"Expected exactly one chain with power 1.0, found {len(cold)}")
        return cold[0]

    ###############################################################################################

    def sample(self, iteration):
        """Output cold chain state if iteration is a sampling iteration. Returns True if sampled"""

        self._require_state("sample", ChainEnsemble.FROZEN)
        if iteration % self.samplefreq != 0:
            return False
        chain = self.cold_chain()
        log_likelihood = chain.calc_log_likelihood()
        log_prior = chain.calc_log_joint_prior()
        treelength = chain.tree.calc_tree_length()
        out = self.output_manager
        out.output_console(f"{iteration:12d} {log_likelihood:12.5f} {log_prior:12.5f}")
        out.output_tree(iteration, chain.tree)
        out.output_parameters(iteration, log_likelihood, log_prior, treelength, self.likelihood.model)
        return True

    ###############################################################################################

    def burn_in(self, niter):
        for iteration in range(1, niter + 1):
            self.step_chains(iteration, sampling=False)
            self.swap_chains()

    ###############################################################################################

    def run_sampling(self, niter):
        for iteration in range(1, niter + 1):
            self.step_chains(iteration, sampling=True)
            self.sample(iteration)
            self.swap_chains()

    ###############################################################################################

    def stop_chains(self):
        self._require_state("stop chains", ChainEnsemble.FROZEN)
        for chain in self.chains:
            chain.stop()
        self.state = ChainEnsemble.STOPPED

    ###############################################################################################

    def show_lambdas(self):
        out = self.output_manager
        for chain in self.chains:
            out.output_console(f"Chain with power {chain.heating_power:.5f}")
            for updater in chain.updaters:
                rate = updater.acceptance_rate()
                ratestr = "" if rate is None else f" (accepted {rate:.3f})"
                out.output_console(f"{updater.name:>30s} {updater.lambda_:12.8f}{ratestr}")

    ###############################################################################################

    def swap_summary(self):
        self.output_manager.output_console("\n" + self.swapstats.format_table())

###################################################################################################
###################################################################################################

class OutputManager:
    """Writes console lines, sampled trees (NEXUS) and sampled parameter values (tab-separated)"""

    def __init__(self, console=None):
        self.console = console if console is not None else sys.stdout
        self.treefile = None
        self.paramfile = None

    ###############################################################################################

    def _open_output(self, filename):
        try:
            return open(filename, mode="wt", encoding="UTF-8")
        except OSError as err:
            raise ConfigurationError(f"Could not open output file: {err}") from err

    ###############################################################################################

    def output_console(self, text=""):
        print(text, file=self.console)

    ###############################################################################################

    def open_tree_file(self, filename, data):
        if self.treefile is not None:
            raise InvariantError("Tree file already open")
        self.treefile = self._open_output(filename)
        translate = ",\n".join(f"    {i + 1} {_quote_name(name)}" for i, name in enumerate(data.taxon_names))
        self.treefile.write(f"#nexus\n\nbegin trees;\n  translate\n{translate}\n  ;\n")
        logger.debug("Opened tree file %s", filename)

    ###############################################################################################

    def close_tree_file(self):
        if self.treefile is not None:
            self.treefile.write("end;\n")
            self.treefile.close()
            logger.debug("Closed tree file")
            self.treefile = None

    ###############################################################################################

    def open_parameter_file(self, filename, model):
        if self.paramfile is not None:
            raise InvariantError("Parameter file already open")
        self.paramfile = self._open_output(filename)
        header = ["iteration", "logL", "logP", "TL"] + model.param_names()
        self.paramfile.write("\t".join(header) + "\n")
        logger.debug("Opened parameter file %s", filename)

    ###############################################################################################

    def close_parameter_file(self):
        if self.paramfile is not None:
            self.paramfile.close()
            self.paramfile = None

    ###############################################################################################

    def close(self):
        self.close_tree_file()
        self.close_parameter_file()

    ###############################################################################################

    def output_tree(self, iteration, tree):
        if self.treefile is None:
            raise InvariantError("Tree file not open")
        rooting = "[&R]" if tree.is_rooted else "[&U]"
        self.treefile.write(f"  tree iter_{iteration} = {rooting} {tree.make_newick(5)};\n")

    ###############################################################################################

    def output_parameters(self, iteration, log_likelihood, log_prior, treelength, model):
        if self.paramfile is None:
            raise InvariantError("Parameter file not open")
        values = [f"{iteration:d}", f"{log_likelihood:.5f}", f"{log_prior:.5f}", f"{treelength:.5f}"]
        values.extend(f"{value:.5f}" for value in model.param_values())
        self.paramfile.write("\t".join(values) + "\n")

###################################################################################################
###################################################################################################

class Options:
    """Settings for one run. validate() checks values and normalises frequencies"""

    defaults = {"seed": 1, "niter": 1000, "samplefreq": 1,
                "datafile": None, "treefile": None, "expected_lnl": 0.0,
                "gammashape": 0.5, "ncateg": 1,
                "statefreq": [0.25, 0.25, 0.25, 0.25],
                "rmatrix": [1.0, 1.0, 1.0, 1.0, 1.0, 1.0],
                "nchains": 1, "heatfactor": 0.5, "burnin": 100,
                "edgelenrate": 10.0,
                "treeout": "trees.tre", "paramout": "params.txt",
                "verbose": False}

    def __init__(self, **settings):
        unknown = set(settings) - set(self.defaults)
        if unknown:
            raise ConfigurationError(f"Unknown option(s): {sorted(unknown)}")
        for name, value in self.defaults.items():
            setattr(self, name, copy.copy(settings.get(name, value)))

    ###############################################################################################

    def validate(self):
        if self.datafile is None:
            raise ConfigurationError("datafile must be specified (--datafile)")
        if self.treefile is None:
            raise ConfigurationError("treefile must be specified (--treefile)")

        # Be sure state frequencies and exchangeabilities are positive and sum to 1.0
        if any(freq <= 0.0 for freq in self.statefreq):
            raise ConfigurationError("all statefreq entries must be positive real numbers")
        sum_freqs = sum(self.statefreq)
        self.statefreq = [freq / sum_freqs for freq in self.statefreq]
        if any(xchg <= 0.0 for xchg in self.rmatrix):
            raise ConfigurationError("all rmatrix entries must be positive real numbers")
        sum_xchg = sum(self.rmatrix)
        self.rmatrix = [xchg / sum_xchg for xchg in self.rmatrix]

        if self.gammashape <= 0.0:
            raise ConfigurationError("gamma shape must be a positive real number")
        if self.ncateg < 1:
            raise ConfigurationError("ncateg must be a positive integer greater than 0")
        if self.nchains < 1:
            raise ConfigurationError("nchains must be a positive integer greater than 0")
        if self.heatfactor <= 0.0 or self.heatfactor > 1.0:
            raise ConfigurationError("heatfactor must be a real number in the interval (0.0,1.0]")
        if self.samplefreq < 1:
            raise ConfigurationError("samplefreq must be a positive integer greater than 0")
        if self.edgelenrate <= 0.0:
            raise ConfigurationError("edgelenrate must be a positive real number")
        if self.niter < 0 or self.burnin < 0:
            raise ConfigurationError("niter and burnin must be non-negative integers")

###################################################################################################

class OptionParser(argparse.ArgumentParser):
    """ArgumentParser that raises ConfigurationError instead of exiting the process"""

    def error(self, message):
        raise ConfigurationError(message)

###################################################################################################

def build_option_parser():
    defaults = Options.defaults
    parser = OptionParser(prog=PROGRAM_NAME, add_help=False, fromfile_prefix_chars="@",
                          description="Bayesian phylogenetics by Metropolis-coupled MCMC (MC3)",
                          formatter_class=argparse.ArgumentDefaultsHelpFormatter)
    parser.add_argument("-h", "--help", action="store_true", help="produce help message")
    parser.add_argument("-v", "--version", action="store_true", help="show program version")
    parser.add_argument("-z", "--seed", type=int, default=defaults["seed"], help="pseudorandom number seed")
    parser.add_argument("-n", "--niter", type=int, default=defaults["niter"], help="number of MCMC iterations")
    parser.add_argument("--samplefreq", type=int, default=defaults["samplefreq"],
                        help="skip this many iterations before sampling next")
    parser.add_argument("-d", "--datafile", help="name of data file in NEXUS format")
    parser.add_argument("-t", "--treefile", help="name of tree file in NEXUS format")
    parser.add_argument("--expectedLnL", dest="expected_lnl", type=float, default=defaults["expected_lnl"],
                        help="log likelihood expected")
    parser.add_argument("-s", "--gammashape", type=float, default=defaults["gammashape"],
                        help="shape parameter of the Gamma among-site rate heterogeneity model")
    parser.add_argument("-c", "--ncateg", type=int, default=defaults["ncateg"],
                        help="number of categories in the discrete Gamma rate heterogeneity model")
    parser.add_argument("-f", "--statefreq", type=float, nargs=4, default=defaults["statefreq"],
                        help="state frequencies in the order A C G T (will be normalized to sum to 1)")
    parser.add_argument("-r", "--rmatrix", type=float, nargs=6, default=defaults["rmatrix"],
                        help="GTR exchangeabilities in the order AC AG AT CG CT GT (will be normalized to sum to 1)")
    parser.add_argument("--nchains", type=int, default=defaults["nchains"], help="number of chains")
    parser.add_argument("--heatfactor", type=float, default=defaults["heatfactor"],
                        help="determines how hot the heated chains are")
    parser.add_argument("--burnin", type=int, default=defaults["burnin"],
                        help="number of iterations used to burn in chains")
    parser.add_argument("--edgelenrate", type=float, default=defaults["edgelenrate"],
                        help="rate of exponential prior on edge lengths")
    parser.add_argument("--treeout", default=defaults["treeout"], help="name of output tree file")
    parser.add_argument("--paramout", default=defaults["paramout"], help="name of output parameter file")
    parser.add_argument("--verbose", action="store_true", help="log debugging information")
    return parser

###################################################################################################

def process_command_line(argv=None):
    """Returns RunResult: validated Options, or help/version text, or configuration error"""

    parser = build_option_parser()
    try:
        args = parser.parse_args(argv)
        if args.help:
            return RunResult(True, parser.format_help())
        if args.version:
            return RunResult(True, f"This is {PROGRAM_NAME} version {__version__}")
        settings = vars(args)
        del settings["help"]
        del settings["version"]
        options = Options(**settings)
        options.validate()
    except ConfigurationError as err:
        return RunResult(False, str(err))
    return RunResult(True, options=options)

###################################################################################################
###################################################################################################

class Sampler:
    """Runs a complete MC3 analysis as described by an Options object"""

    def __init__(self, options, console=None):
        self.options = options
        self.output_manager = OutputManager(console)
        self.ensemble = None

    ###############################################################################################

    def run(self):
        """Run analysis. Configuration errors are reported here and returned as failed RunResult"""

        out = self.output_manager
        out.output_console("Starting...")
        try:
            self._run()
            result = RunResult(True)
        except ConfigurationError as err:
            out.output_console(f"Problem encountered:\n  {err}")
            result = RunResult(False, str(err))
        finally:
            out.close()
        out.output_console("\nFinished!")
        return result

    ###############################################################################################

    def _run(self):
        opts = self.options
        out = self.output_manager

        data = Data.from_file(opts.datafile)

        model = GTRModel()
        model.set_exchangeabilities_and_state_freqs(opts.rmatrix, opts.statefreq)
        model.set_gamma_shape(opts.gammashape)
        model.set_gamma_ncateg(opts.ncateg)
        out.output_console(model.describe())

        likelihood = Likelihood(data, model)

        tree_summary = TreeSummary()
        tree_summary.read_treefile(opts.treefile)
        starting_tree = Tree.from_newick(tree_summary.get_newick(0), rooted=False,
                                         taxon_names=data.taxon_names, translate=tree_summary.translate)
        out.output_console(f"log likelihood = {likelihood.calc_log_likelihood(starting_tree):.5f}")
        out.output_console(f"      (expecting {opts.expected_lnl:.5f})")

        lot = Lot(opts.seed)

        out.open_tree_file(opts.treeout, data)
        out.open_parameter_file(opts.paramout, model)

        out.output_console(f"Number of chains = {opts.nchains}")
        self.ensemble = ChainEnsemble(opts.nchains, opts.heatfactor, lot, likelihood, out,
                                      samplefreq=opts.samplefreq, edgelen_rate=opts.edgelenrate)
        self.ensemble.init_chains(starting_tree)

        out.output_console(f"Burning in for {opts.burnin} iterations... ")
        self.ensemble.burn_in(opts.burnin)

        out.output_console("Burn-in finished, no longer tuning updaters.")
        self.ensemble.stop_tuning_chains()
        self.ensemble.show_lambdas()

        out.output_console("\n{:>12s} {:>12s} {:>12s}".format("iteration", "logLike", "logPrior"))
        self.ensemble.run_sampling(opts.niter)
        self.ensemble.show_lambdas()
        self.ensemble.stop_chains()
        self.ensemble.swap_summary()

        out.close_tree_file()
        out.close_parameter_file()

        out.output_console(f'\nSummary of "{opts.treeout}":')
        tree_summary.clear()
        tree_summary.read_treefile(opts.treeout)
        out.output_console(tree_summary.show_summary())

###################################################################################################
###################################################################################################

def main(argv=None):
    """Console entry point. Returns exit status"""

    result = process_command_line(argv)
    if result.options is None:
        if result.success:
            print(result.message)
            return 0
        print(f"Problem encountered:\n  {result.message}")
        print("\nFinished!")
        return 1

    logging.basicConfig(level=logging.DEBUG if result.options.verbose else logging.WARNING,
                        format="%(levelname)s %(name)s: %(message)s")
    result = Sampler(result.options).run()
    return 0 if result.success else 1

###################################################################################################

if __name__ == "__main__":
    sys.exit(main())
