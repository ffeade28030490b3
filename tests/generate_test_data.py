"""
Test data generator for dexanno.

Creates minimal synthetic inputs and tool outputs so every parser can be
exercised without installing featureCounts, R, MeTaxa2, Aragorn,
Infernal or CRISPRdigger:
  • a two-contig genome FASTA
  • a featureCounts table + .summary for 6 samples in 2 groups
  • a sample sheet deliberately listed in a different order
  • Aragorn -fon FASTA and -w batch output
  • a cmscan --fmt 2 tblout with one clan overlap
  • MeTaxa2 .extraction.results for SSU and LSU
  • a CRISPRdigger-style GFF3
"""

from __future__ import annotations

import random
from pathlib import Path

random.seed(42)

SAMPLES = ["ctrl_1", "ctrl_2", "ctrl_3", "trt_1", "trt_2", "trt_3"]
GROUPS = ["control"] * 3 + ["treated"] * 3

CONTIGS = {"contig_1": 12_000, "contig_2": 6_000}


def _random_seq(length: int) -> str:
    """Generate a random DNA sequence."""
    return "".join(random.choices("ACGT", k=length))


def write_genome(path: Path) -> Path:
    with open(path, "w") as fh:
        for name, length in CONTIGS.items():
            seq = _random_seq(length)
            fh.write(f">{name} synthetic test contig\n")
            for i in range(0, length, 70):
                fh.write(seq[i : i + 70] + "\n")
    return path


def write_featurecounts(path: Path, n_genes: int = 40) -> Path:
    """featureCounts table with BAM paths as sample columns."""
    bam_cols = [f"/data/bam/{s}Aligned.sortedByCoord.out.bam" for s in SAMPLES]
    lines = [
        '# Program:featureCounts v2.0.6; Command:"featureCounts" "-a" "genes.gtf" "-o" "featurecounts.txt"',
        "\t".join(["Geneid", "Chr", "Start", "End", "Strand", "Length"] + bam_cols),
    ]
    totals = [0] * len(SAMPLES)
    for g in range(1, n_genes + 1):
        start = g * 1000
        if g % 5 == 0:
            # two-exon gene
            chrom, starts, ends, strand = "chr1;chr1", f"{start};{start + 400}", f"{start + 200};{start + 700}", "+;+"
            length = 501
        else:
            chrom, starts, ends, strand = "chr1", str(start), str(start + 799), "-" if g % 2 else "+"
            length = 800
        base = random.randint(50, 500)
        row = []
        for i, grp in enumerate(GROUPS):
            fold = 4 if (grp == "treated" and g <= 5) else 1
            n = int(base * fold * random.uniform(0.8, 1.2))
            if g == n_genes:
                n = 0  # one silent gene
            row.append(n)
            totals[i] += n
        lines.append("\t".join([f"gene{g}", chrom, starts, ends, strand, str(length)] + [str(v) for v in row]))
    path.write_text("\n".join(lines) + "\n")

    summary = path.with_name(path.name + ".summary")
    s_lines = ["\t".join(["Status"] + bam_cols)]
    s_lines.append("\t".join(["Assigned"] + [str(t) for t in totals]))
    s_lines.append("\t".join(["Unassigned_NoFeatures"] + [str(t // 10) for t in totals]))
    s_lines.append("\t".join(["Unassigned_Ambiguity"] + ["0"] * len(SAMPLES)))
    summary.write_text("\n".join(s_lines) + "\n")
    return path


def write_sample_sheet(path: Path) -> Path:
    order = [5, 0, 3, 1, 4, 2]  # shuffled on purpose
    rows = ["sample,group,batch"]
    for i in order:
        rows.append(f"{SAMPLES[i]},{GROUPS[i]},b{i % 2 + 1}")
    path.write_text("\n".join(rows) + "\n")
    return path


def write_aragorn_fasta(path: Path) -> Path:
    records = [
        (">1-1 tRNA-Ala(tgc) [1200,1275]", _random_seq(76)),
        (">1-2 tRNA-Leu(caa) c[3100,3184]", _random_seq(85)),
        (">1-3 tmRNA c[8000,8363]", _random_seq(364)),
        (">2-1 tRNA-Met(cat) [500,576]", _random_seq(77)),
    ]
    with open(path, "w") as fh:
        for header, seq in records:
            fh.write(f"{header}\n{seq}\n")
    return path


def write_aragorn_batch(path: Path) -> Path:
    path.write_text(
        ">contig_1 synthetic test contig\n"
        "3 genes found\n"
        "1   tRNA-Ala               [1200,1275]     35      (tgc)\n"
        "2   tRNA-Leu              c[3100,3184]     35      (caa)\n"
        "3   tmRNA                 c[8000,8363]     90,122  ANDENYALAA**\n"
        ">contig_2 synthetic test contig\n"
        "1 gene found\n"
        "1   tRNA-Met               [500,576]       35      (cat)\n"
    )
    return path


TBLOUT_HEADER = (
    "#idx target name          accession query name           accession clan name mdl mdl from   mdl to "
    "seq from   seq to strand trunc pass   gc  bias  score   E-value inc olp anyidx afrct1 afrct2 winidx "
    "wfrct1 wfrct2 description of target\n"
    "#--- -------------------- --------- -------------------- --------- --------- --- -------- -------- "
    "-------- -------- ------ ----- ---- ---- ----- ------ --------- --- --- ------ ------ ------ ------ "
    "------ ------ ---------------------\n"
)


def write_cmscan_tblout(path: Path) -> Path:
    rows = [
        "1    5S_rRNA              RF00001   contig_1             -         CL00113    cm        1      119     9500     9615      +    no    1 0.52   0.0   78.2   2.1e-17  !   *       -      -      -      -      -      - 5S ribosomal RNA",
        "2    FMN                  RF00050   contig_2             -         -          cm        1      140     4300     4160      -    no    1 0.47   0.0   95.3   1.3e-20  !   *       -      -      -      -      -      - FMN riboswitch (RFN element)",
        "3    tRNA                 RF00005   contig_1             -         CL00001    cm        1       71     1200     1275      +    no    1 0.58   0.0   60.1   4.4e-12  !   *       -      -      -      -      -      - tRNA",
        "4    tRNA-Sec             RF01852   contig_1             -         CL00001    cm        1       90     1200     1275      +    no    1 0.58   0.0   30.0   2.0e-05  !   =       3  1.000  1.000      -      -      - Selenocysteine transfer RNA",
        "5    RNaseP_bact_a        RF00010   contig_2             -         CL00002    cm        1      367     1000     1360      +    5'    1 0.60   0.0  210.4   5.5e-50  !   *       -      -      -      -      -      - Bacterial RNase P class A",
    ]
    path.write_text(TBLOUT_HEADER + "\n".join(rows) + "\n#\n# Program:         cmscan\n")
    return path


def write_metaxa2_results(output_dir: Path, stem: str = "genome") -> dict[str, Path]:
    ssu = output_dir / f"{stem}_ssu.extraction.results"
    lsu = output_dir / f"{stem}_lsu.extraction.results"
    ssu.write_text(
        "contig_1 synthetic test contig\t12000\tB\tBacteria\t1.2e-120\t2001-2090\t2300-2420\t3450-3530\n"
        "contig_2 synthetic test contig\t6000\tB\tBacteria\t3.0e-80\t5500-5400\t5200-5100\n"
        "contig_2 synthetic test contig\t6000\tB\tBacteria\tno regions\n"
    )
    lsu.write_text("contig_1\t12000\tB\tBacteria\t1.0e-200\t4000-4100\t6800-6900\n")
    return {"ssu": ssu, "lsu": lsu}


def write_metaxa2_taxonomy(path: Path) -> Path:
    path.write_text(
        "contig_1\tBacteria;Proteobacteria;Gammaproteobacteria;Enterobacterales\t99.1\t1540\t95\n"
        "contig_2\tBacteria;Firmicutes\n"
    )
    return path


def write_crispr_gff(path: Path) -> Path:
    path.write_text(
        "##gff-version 3\n"
        "contig_1\tCRISPRdigger\trepeat_region\t10001\t10400\t.\t+\t.\tID=CRISPR1;rpt_unit_seq=GTTTTAGAGCTATGCTGTTTTGAATGGTCCCAAAAC\n"
        "contig_1\tCRISPRdigger\tdirect_repeat\t10001\t10036\t.\t+\t.\tID=CRISPR1_DR1;Parent=CRISPR1\n"
        "contig_1\tCRISPRdigger\tdirect_repeat\t10067\t10102\t.\t+\t.\tID=CRISPR1_DR2;Parent=CRISPR1\n"
        "contig_1\tCRISPRdigger\tdirect_repeat\t10133\t10168\t.\t+\t.\tID=CRISPR1_DR3;Parent=CRISPR1\n"
        "contig_1\tCRISPRdigger\tspacer\t10037\t10066\t.\t+\t.\tID=CRISPR1_SP1;Parent=CRISPR1\n"
    )
    return path


def generate_all(output_dir: Path) -> dict[str, Path]:
    """Write every fixture file into *output_dir*."""
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    files = {
        "genome": write_genome(output_dir / "genome.fna"),
        "featurecounts": write_featurecounts(output_dir / "featurecounts.txt"),
        "samples": write_sample_sheet(output_dir / "samples.csv"),
        "aragorn_fasta": write_aragorn_fasta(output_dir / "genome.aragorn.fasta"),
        "aragorn_batch": write_aragorn_batch(output_dir / "aragorn_batch.txt"),
        "tblout": write_cmscan_tblout(output_dir / "genome.tblout"),
        "metaxa2_taxonomy": write_metaxa2_taxonomy(output_dir / "genome_ssu.taxonomy.txt"),
        "crispr_gff": write_crispr_gff(output_dir / "crispr.gff3"),
    }
    m = write_metaxa2_results(output_dir)
    files["metaxa2_ssu"] = m["ssu"]
    files["metaxa2_lsu"] = m["lsu"]
    return files


if __name__ == "__main__":
    import sys

    out = Path(sys.argv[1]) if len(sys.argv) > 1 else Path("test_data")
    paths = generate_all(out)
    print("Generated test data:")
    for k, v in paths.items():
        print(f"  {k}: {v}  ({v.stat().st_size} bytes)")
