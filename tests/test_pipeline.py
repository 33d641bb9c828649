"""
Test cases for the gene set analysis pipeline.
"""

import time

import numpy as np
import polars as pl
import pytest
from tomli_w import dump as tomli_w_dump

from pygsa import pipeline
from pygsa import (
    DirectionalityClass,
    GeneSetAnalysis,
    GSAConfig,
    run_gsa,
)
from pygsa.exceptions import (
    DegenerateInputError,
    EmptyCollectionError,
    IncompatibleStatTypeError,
    InputMismatchError,
    MissingDirectionsError,
    UnsupportedCombinationError,
)

UP = DirectionalityClass.DISTINCT_DIR_UP
DN = DirectionalityClass.DISTINCT_DIR_DN
NON_DIR = DirectionalityClass.NON_DIR
MIXED_UP = DirectionalityClass.MIXED_DIR_UP
MIXED_DN = DirectionalityClass.MIXED_DIR_DN

@pytest.fixture
def directional_data():
    """P-values and directions with one up- and one down-regulated pair.

    Filler genes have large p-values so that only the two pairs stand out
    from a background of random gene pairs.
    """
    p_values = {'g1': 0.01, 'g2': 0.02, 'g3': 0.5, 'g4': 0.8}
    directions = {'g1': 1.0, 'g2': 1.0, 'g3': -1.0, 'g4': -1.0}
    for i, p in enumerate(np.linspace(0.9, 0.99, 40)):
        p_values[f'f{i}'] = float(p)
        directions[f'f{i}'] = 1.0 if i % 2 == 0 else -1.0
    gsc = {'S1': ['g1', 'g2'], 'S2': ['g3', 'g4'], 'S3': ['not_measured']}
    return p_values, directions, gsc

@pytest.fixture
def score_data():
    """Signed scores with an up-regulated and a down-regulated block."""
    rng = np.random.default_rng(21)
    values = rng.normal(size=80)
    values[:6] = 4.0 + rng.uniform(size=6)
    values[6:12] = -4.0 - rng.uniform(size=6)
    scores = {f'g{i}': float(v) for i, v in enumerate(values)}
    gsc = {
        'up': [f'g{i}' for i in range(6)],
        'down': [f'g{i}' for i in range(6, 12)],
        'mixed': [f'g{i}' for i in (0, 1, 2, 6, 7, 8)],
        'background': [f'g{i}' for i in range(40, 50)],
    }
    return scores, gsc

def test_directional_end_to_end(directional_data):
    """Test distinct-directional significance of coordinated up and down pairs."""
    p_values, directions, gsc = directional_data
    result = run_gsa(p_values, gsc, directions, gene_set_stat='mean',
                     signif_method='geneSampling', n_perm=1000, seed=1)

    assert result.gene_stat_type == 'p'
    assert result.gene_set_names == ('S1', 'S2')
    assert result.computed_classes == [UP, DN, NON_DIR, MIXED_UP, MIXED_DN]
    p_up = result.pvalue(UP)
    p_dn = result.pvalue(DN)
    assert p_up[0] < 0.05
    assert p_dn[1] < 0.05
    assert p_up[1] > 0.5
    assert p_dn[0] > 0.5
    np.testing.assert_array_equal(result.n_genes_up, [2, 0])
    np.testing.assert_array_equal(result.n_genes_dn, [0, 2])
    # no down-regulated members in S1
    assert np.isnan(result.pvalue(MIXED_DN)[0])

def test_empty_intersection_dropped(directional_data):
    """Test that a gene set without measured genes is absent from the result."""
    p_values, directions, gsc = directional_data
    result = run_gsa(p_values, gsc, directions, n_perm=100, seed=1)
    assert 'S3' not in result.gene_set_names
    assert 'S3' not in result.summary_table()['gene_set'].to_list()

def test_p_values_without_directions(directional_data):
    """Test that only the non-directional class is computed without directions."""
    p_values, _, gsc = directional_data
    result = run_gsa(p_values, gsc, gene_set_stat='fisher', signif_method='nullDist')
    assert result.computed_classes == [NON_DIR]
    assert result.pvalue(UP) is None
    assert result.n_genes_up is None
    assert result.n_perm is None
    assert 'p_distinct_dir_up' not in result.summary_table().columns

def test_requested_directional_class_without_directions(directional_data):
    """Test that explicitly requested directional classes need directions."""
    p_values, _, gsc = directional_data
    with pytest.raises(MissingDirectionsError):
        run_gsa(p_values, gsc, classes=['distinct_dir_up'], n_perm=10)

def test_null_dist_singletons():
    """Test closed-form p-values of single-gene sets."""
    p_values = {'a': 0.01, 'b': 0.3, 'c': 0.6}
    gsc = {'A': ['a'], 'B': ['b'], 'C': ['c']}
    for stat in ('fisher', 'stouffer', 'reporter'):
        result = run_gsa(p_values, gsc, gene_set_stat=stat, signif_method='nullDist', adj_method='none')
        np.testing.assert_allclose(result.pvalue(NON_DIR), [0.01, 0.3, 0.6])
        np.testing.assert_allclose(result.adj_pvalue(NON_DIR), [0.01, 0.3, 0.6])

def test_adjusted_not_smaller_than_raw(score_data):
    """Test that adjusted p-values are at least the raw p-values in every class."""
    scores, gsc = score_data
    result = run_gsa(scores, gsc, gene_set_stat='median', n_perm=300, seed=4, adj_method='BH')
    for cls in result.computed_classes:
        raw, adjusted = result.pvalue(cls), result.adj_pvalue(cls)
        ok = ~np.isnan(raw)
        assert np.all(adjusted[ok] >= raw[ok])
        assert np.array_equal(np.isnan(adjusted), np.isnan(raw))

def test_score_classes(score_data):
    """Test the classes of signed scores."""
    scores, gsc = score_data
    result = run_gsa(scores, gsc, gene_set_stat='mean', n_perm=500, seed=9)
    names = list(result.gene_set_names)
    up, down, mixed = names.index('up'), names.index('down'), names.index('mixed')

    assert result.pvalue(UP)[up] < 0.01
    assert result.pvalue(DN)[down] < 0.01
    assert result.pvalue(NON_DIR)[down] < 0.01
    # half up, half down: the mean cancels but both subsets are extreme
    assert result.pvalue(UP)[mixed] > 0.05
    assert result.pvalue(DN)[mixed] > 0.05
    assert result.pvalue(MIXED_UP)[mixed] < 0.05
    assert result.pvalue(MIXED_DN)[mixed] < 0.05

def test_maxmean(score_data):
    """Test that maxmean has no non-directional class."""
    scores, gsc = score_data
    result = run_gsa(scores, gsc, gene_set_stat='maxmean', n_perm=200, seed=3)
    assert result.computed_classes == [UP, DN, MIXED_UP, MIXED_DN]

@pytest.mark.parametrize('stat', ['gsea', 'fgsea'])
def test_gsea(score_data, stat):
    """Test enrichment scores with the normalised-score false discovery rate."""
    scores, gsc = score_data
    result = run_gsa(scores, gsc, gene_set_stat=stat, n_perm=300, seed=6)
    names = list(result.gene_set_names)
    up, down = names.index('up'), names.index('down')

    assert result.computed_classes == [UP, DN, NON_DIR]
    assert result.statistic(UP)[up] > 0.8
    assert result.statistic(UP)[down] < -0.8
    assert result.pvalue(UP)[up] < 0.01
    assert result.pvalue(DN)[down] < 0.01
    assert result.nes is not None
    assert result.nes[up] > 0 and result.nes[down] < 0
    assert result.adj_pvalue(UP)[down] == 1.0
    assert result.adj_pvalue(DN)[up] == 1.0
    for cls in result.computed_classes:
        raw, adjusted = result.pvalue(cls), result.adj_pvalue(cls)
        assert np.all((adjusted > 0) & (adjusted <= 1))
        assert np.all(adjusted >= raw)
    assert 'nes' in result.summary_table().columns

@pytest.mark.parametrize('stat', ['gsea', 'fgsea'])
def test_gsea_fdr_not_below_raw(stat):
    """Test that no false discovery rate is zero or below its raw p-value."""
    rng = np.random.default_rng(17)
    values = rng.normal(size=200)
    scores = {f'g{i}': float(v) for i, v in enumerate(values)}
    order = np.argsort(values)
    gsc = {f'random{k}': [f'g{i}' for i in rng.choice(200, size=15, replace=False)] for k in range(30)}
    # the most extreme genes, so that no null score reaches the observed one
    gsc['extreme'] = [f'g{i}' for i in order[-12:]]
    result = run_gsa(scores, gsc, gene_set_stat=stat, n_perm=500, seed=2, adj_method='fdr')

    extreme = list(result.gene_set_names).index('extreme')
    assert result.pvalue(UP)[extreme] == pytest.approx(1 / 501)
    for cls in result.computed_classes:
        raw, adjusted = result.pvalue(cls), result.adj_pvalue(cls)
        assert np.all(adjusted > 0)
        assert np.all(adjusted >= raw)

def test_gsea_and_fgsea_agree(score_data):
    """Test that both enrichment score implementations give the same statistics."""
    scores, gsc = score_data
    walk = run_gsa(scores, gsc, gene_set_stat='gsea', n_perm=10, seed=1)
    fast = run_gsa(scores, gsc, gene_set_stat='fgsea', n_perm=10, seed=1)
    for cls in walk.computed_classes:
        np.testing.assert_allclose(walk.statistic(cls), fast.statistic(cls), rtol=1e-10)

def test_page_null_dist(score_data):
    """Test PAGE with its normal null distribution."""
    scores, gsc = score_data
    result = run_gsa(scores, gsc, gene_set_stat='page', signif_method='nullDist')
    names = list(result.gene_set_names)
    assert result.pvalue(UP)[names.index('up')] < 1e-6
    assert result.pvalue(DN)[names.index('down')] < 1e-6

def test_sample_permutation(score_data):
    """Test significance from permuted gene-level statistics."""
    scores, gsc = score_data
    rng = np.random.default_rng(5)
    gene_ids = list(scores)
    perm = pl.DataFrame({'gene_id': gene_ids[::-1]}).with_columns(
        [pl.Series(f'perm{j}', rng.normal(size=len(gene_ids))) for j in range(150)]
    )
    result = run_gsa(scores, gsc, perm_stats=perm, signif_method='samplePermutation', n_perm=1000)
    names = list(result.gene_set_names)

    assert result.n_perm == 150
    assert result.computed_classes == [UP, DN, NON_DIR]
    assert result.pvalue(UP)[names.index('up')] == pytest.approx(1 / 151)
    assert result.pvalue(DN)[names.index('down')] == pytest.approx(1 / 151)

def test_sample_permutation_array_input(directional_data):
    """Test permuted p-values and directions given as arrays with row labels."""
    p_values, directions, gsc = directional_data
    rng = np.random.default_rng(2)
    n_genes = len(p_values)
    perm_p = rng.uniform(0.05, 1.0, size=(n_genes, 50))
    perm_dirs = rng.choice([-1.0, 1.0], size=(n_genes, 50))
    result = run_gsa(
        p_values, gsc, directions,
        perm_stats=perm_p, perm_directions=perm_dirs, perm_row_ids=list(p_values),
        signif_method='samplePermutation', gene_set_stat='mean',
    )
    assert result.computed_classes == [UP, DN, NON_DIR]
    assert result.pvalue(UP)[0] == pytest.approx(1 / 51)

def test_sample_permutation_input_errors(directional_data):
    """Test validation of permutation inputs."""
    p_values, directions, gsc = directional_data
    perm = np.full((len(p_values), 5), 0.5)
    with pytest.raises(InputMismatchError):
        run_gsa(p_values, gsc, directions, signif_method='samplePermutation')
    with pytest.raises(MissingDirectionsError):
        run_gsa(p_values, gsc, directions, perm_stats=perm, perm_row_ids=list(p_values),
                signif_method='samplePermutation')
    with pytest.raises(DegenerateInputError):
        run_gsa(p_values, gsc, perm_stats=perm * 3, perm_row_ids=list(p_values),
                signif_method='samplePermutation')
    with pytest.raises(UnsupportedCombinationError):
        run_gsa(p_values, gsc, directions, perm_stats=perm, perm_row_ids=list(p_values),
                signif_method='samplePermutation', classes=['mixed_dir_up'])

def test_unsupported_combinations(score_data):
    """Test that undefined option combinations fail before computation."""
    scores, gsc = score_data
    with pytest.raises(UnsupportedCombinationError):
        run_gsa(scores, gsc, gene_set_stat='fgsea', signif_method='nullDist')
    with pytest.raises(UnsupportedCombinationError):
        run_gsa(scores, gsc, gene_set_stat='gsea', adj_method='bonferroni')

def test_incompatible_stat_type(directional_data):
    """Test that score statistics reject p-values."""
    p_values, directions, gsc = directional_data
    with pytest.raises(IncompatibleStatTypeError):
        run_gsa(p_values, gsc, directions, gene_set_stat='page')

def test_size_limits(score_data):
    """Test the gene set size filter."""
    scores, gsc = score_data
    result = run_gsa(scores, gsc, gs_size_lim=(7, None), n_perm=50, seed=1)
    assert result.gene_set_names == ('background',)
    with pytest.raises(EmptyCollectionError):
        run_gsa(scores, gsc, gs_size_lim=(20, 30), n_perm=50)

def test_invalid_collection(score_data):
    """Test that the gene set collection must map names to gene lists."""
    scores, _ = score_data
    with pytest.raises(InputMismatchError):
        run_gsa(scores, [['g1', 'g2']], n_perm=10)
    with pytest.raises(InputMismatchError):
        run_gsa(scores, {'A': 'g1'}, n_perm=10)

def test_config_object_and_overrides(score_data):
    """Test passing a configuration with keyword overrides."""
    scores, gsc = score_data
    config = GSAConfig(gene_set_stat='sum', n_perm=20, seed=3)
    result = run_gsa(scores, gsc, config=config, n_perm=40)
    assert result.n_perm == 40
    assert result.gene_set_stat.value == 'sum'
    assert config.n_perm == 20

def test_run_time_includes_setup(score_data, monkeypatch):
    """Test that the reported run time covers configuration and collection setup."""
    scores, gsc = score_data
    resolve_config = pipeline._resolve_config

    def slow_resolve_config(config, overrides):
        time.sleep(0.2)
        return resolve_config(config, overrides)

    monkeypatch.setattr(pipeline, '_resolve_config', slow_resolve_config)
    result = run_gsa(scores, gsc, gene_set_stat='page', signif_method='nullDist')
    assert result.run_time >= 0.2

def test_result_echoes_inputs(directional_data):
    """Test that the result carries the inputs and options used."""
    p_values, directions, gsc = directional_data
    info = {'S1': 'pathway one', 'S2': 'pathway two'}
    result = run_gsa(p_values, gsc, directions, gsc_info=info, n_perm=20, seed=1, adj_method='holm')
    assert result.gene_level_stats['g1'] == 0.01
    assert result.directions['g3'] == -1.0
    assert result.gsc['S3'] == ('not_measured',)
    assert result.gsc_info['S2'] == 'pathway two'
    assert result.adj_method == 'holm'
    assert result.gs_size_lim == (1.0, float('inf'))
    assert result.run_time >= 0
    assert result.summary_table()['info'].to_list() == ['pathway one', 'pathway two']

@pytest.fixture
def config_file(tmp_path):
    """Create a TOML configuration for the analysis class."""
    config_path = tmp_path / 'config.toml'
    with open(config_path, 'wb') as f:
        tomli_w_dump({'analysis': {'gene_set_stat': 'wilcoxon', 'n_perm': 200, 'seed': 7}}, f)
    return config_path

def test_gene_set_analysis_from_toml(config_file, directional_data, tmp_path):
    """Test running and saving an analysis configured from a TOML file."""
    p_values, directions, gsc = directional_data
    analysis = GeneSetAnalysis(config_file)
    assert analysis.save_results(tmp_path / 'none') is None

    result = analysis.run(p_values, gsc, directions)
    assert result is analysis.result
    assert result.gene_set_stat.value == 'wilcoxon'
    assert result.n_perm == 200

    output_dir = analysis.save_results(tmp_path / 'results')
    assert (output_dir / 'gsa_summary.tsv').exists()
    assert GSAConfig.from_toml(output_dir / 'config.toml') == analysis.config

def test_gene_set_analysis_defaults(score_data):
    """Test the analysis class with a configuration object."""
    scores, gsc = score_data
    analysis = GeneSetAnalysis(GSAConfig(n_perm=50, seed=2))
    result = analysis.run(scores, gsc, gsc_info={'up': 'x'})
    assert result.gsc_info['up'] == 'x'
    assert GeneSetAnalysis().config == GSAConfig()
